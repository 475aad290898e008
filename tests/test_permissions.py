"""Unit tests for the role/permission table."""

import pytest

from schoolportal.service.errors import ValidationError
from schoolportal.service.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    has_permission,
    permissions_for,
    role_allows,
)


class TestRolePermissions:
    """Grants per role."""

    def test_every_role_has_an_entry(self):
        assert set(ROLE_PERMISSIONS) == set(Role)

    def test_admin_manages_users(self):
        for perm in (
            Permission.USERS_CREATE,
            Permission.USERS_READ,
            Permission.USERS_UPDATE,
            Permission.USERS_DELETE,
            Permission.USERS_SUSPEND,
            Permission.USERS_UNSUSPEND,
        ):
            assert has_permission(Role.ADMIN, perm)

    def test_admin_has_global_read(self):
        assert has_permission("admin", "classes:read_all")
        assert has_permission("admin", "grades:read_all")

    def test_teacher_owns_classes_and_grades(self):
        assert has_permission("teacher", Permission.CLASSES_CREATE)
        assert has_permission("teacher", Permission.CLASSES_ADD_STUDENT)
        assert has_permission("teacher", Permission.GRADES_CREATE)
        assert not has_permission("teacher", Permission.USERS_DELETE)
        assert not has_permission("teacher", Permission.SUBMISSIONS_CREATE_OWN)

    def test_student_submits_own_work(self):
        assert has_permission("student", Permission.SUBMISSIONS_CREATE_OWN)
        assert has_permission("student", Permission.SUBMISSIONS_UPDATE_OWN)
        assert has_permission("student", Permission.GRADES_READ_OWN)
        assert not has_permission("student", Permission.GRADES_CREATE)
        assert not has_permission("student", Permission.USERS_READ)

    def test_grants_never_overlap_between_admin_and_student(self):
        assert not ROLE_PERMISSIONS[Role.ADMIN] & ROLE_PERMISSIONS[Role.STUDENT]

    def test_permissions_for_returns_frozenset(self):
        perms = permissions_for("teacher")
        assert isinstance(perms, frozenset)
        assert perms == ROLE_PERMISSIONS[Role.TEACHER]


class TestFailClosed:
    """Unknown inputs."""

    def test_unknown_role_denied(self):
        assert has_permission("superuser", Permission.USERS_READ) is False

    def test_unknown_permission_denied(self):
        assert has_permission("admin", "users:impersonate") is False

    def test_permissions_for_unknown_role_raises(self):
        with pytest.raises(ValidationError):
            permissions_for("superuser")


class TestRoleAllows:
    def test_accepts_enum_and_string_mix(self):
        assert role_allows("admin", [Role.ADMIN, Role.TEACHER])
        assert role_allows(Role.TEACHER, ["teacher"])

    def test_rejects_missing_role(self):
        assert not role_allows("student", [Role.ADMIN, Role.TEACHER])
        assert not role_allows("student", [])
