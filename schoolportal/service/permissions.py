from __future__ import annotations

from enum import Enum
from typing import Iterable

from schoolportal.service.errors import ValidationError


class Role(str, Enum):
    """Closed set of portal roles."""

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class Permission(str, Enum):
    # User management
    USERS_CREATE = "users:create"
    USERS_READ = "users:read"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"
    USERS_SUSPEND = "users:suspend"
    USERS_UNSUSPEND = "users:unsuspend"
    # Teacher groups
    TEACHER_GROUPS_CREATE = "teacher_groups:create"
    TEACHER_GROUPS_READ = "teacher_groups:read"
    TEACHER_GROUPS_UPDATE = "teacher_groups:update"
    TEACHER_GROUPS_DELETE = "teacher_groups:delete"
    TEACHER_GROUPS_ADD_MEMBER = "teacher_groups:add_member"
    TEACHER_GROUPS_REMOVE_MEMBER = "teacher_groups:remove_member"
    # Classes
    CLASSES_READ_ALL = "classes:read_all"
    CLASSES_CREATE = "classes:create"
    CLASSES_READ_OWN = "classes:read_own"
    CLASSES_UPDATE_OWN = "classes:update_own"
    CLASSES_DELETE_OWN = "classes:delete_own"
    CLASSES_ADD_STUDENT = "classes:add_student"
    CLASSES_REMOVE_STUDENT = "classes:remove_student"
    CLASSES_READ_ENROLLED = "classes:read_enrolled"
    # Assignments
    ASSIGNMENTS_READ_ALL = "assignments:read_all"
    ASSIGNMENTS_CREATE = "assignments:create"
    ASSIGNMENTS_READ_OWN = "assignments:read_own"
    ASSIGNMENTS_UPDATE_OWN = "assignments:update_own"
    ASSIGNMENTS_DELETE_OWN = "assignments:delete_own"
    ASSIGNMENTS_READ_CLASS = "assignments:read_class"
    # Submissions
    SUBMISSIONS_READ_CLASS = "submissions:read_class"
    SUBMISSIONS_CREATE_OWN = "submissions:create_own"
    SUBMISSIONS_UPDATE_OWN = "submissions:update_own"
    SUBMISSIONS_READ_OWN = "submissions:read_own"
    # Grades
    GRADES_READ_ALL = "grades:read_all"
    GRADES_CREATE = "grades:create"
    GRADES_UPDATE_OWN = "grades:update_own"
    GRADES_READ_CLASS = "grades:read_class"
    GRADES_READ_OWN = "grades:read_own"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(
        {
            Permission.USERS_CREATE,
            Permission.USERS_READ,
            Permission.USERS_UPDATE,
            Permission.USERS_DELETE,
            Permission.USERS_SUSPEND,
            Permission.USERS_UNSUSPEND,
            Permission.TEACHER_GROUPS_CREATE,
            Permission.TEACHER_GROUPS_READ,
            Permission.TEACHER_GROUPS_UPDATE,
            Permission.TEACHER_GROUPS_DELETE,
            Permission.TEACHER_GROUPS_ADD_MEMBER,
            Permission.TEACHER_GROUPS_REMOVE_MEMBER,
            Permission.CLASSES_READ_ALL,
            Permission.ASSIGNMENTS_READ_ALL,
            Permission.GRADES_READ_ALL,
        }
    ),
    Role.TEACHER: frozenset(
        {
            Permission.CLASSES_CREATE,
            Permission.CLASSES_READ_OWN,
            Permission.CLASSES_UPDATE_OWN,
            Permission.CLASSES_DELETE_OWN,
            Permission.CLASSES_ADD_STUDENT,
            Permission.CLASSES_REMOVE_STUDENT,
            Permission.ASSIGNMENTS_CREATE,
            Permission.ASSIGNMENTS_READ_OWN,
            Permission.ASSIGNMENTS_UPDATE_OWN,
            Permission.ASSIGNMENTS_DELETE_OWN,
            Permission.SUBMISSIONS_READ_CLASS,
            Permission.GRADES_CREATE,
            Permission.GRADES_UPDATE_OWN,
            Permission.GRADES_READ_CLASS,
        }
    ),
    Role.STUDENT: frozenset(
        {
            Permission.CLASSES_READ_ENROLLED,
            Permission.ASSIGNMENTS_READ_CLASS,
            Permission.GRADES_READ_OWN,
            Permission.SUBMISSIONS_CREATE_OWN,
            Permission.SUBMISSIONS_UPDATE_OWN,
            Permission.SUBMISSIONS_READ_OWN,
        }
    ),
}


def parse_role(role: str | Role) -> Role:
    try:
        return Role(role)
    except ValueError as exc:
        raise ValidationError(f"unknown role: {role}", detail={"role": str(role)}) from exc


def permissions_for(role: str | Role) -> frozenset[Permission]:
    return ROLE_PERMISSIONS[parse_role(role)]


def has_permission(role: str | Role, permission: str | Permission) -> bool:
    """Return whether ``role`` grants ``permission``.

    Unknown roles and unknown permission names are denied rather than raising,
    so a guard built on this check fails closed.
    """
    try:
        resolved_role = Role(role)
        resolved_permission = Permission(permission)
    except ValueError:
        return False
    return resolved_permission in ROLE_PERMISSIONS[resolved_role]


def _role_value(role: str | Role) -> str:
    return role.value if isinstance(role, Role) else role


def role_allows(role: str | Role, allowed_roles: Iterable[str | Role]) -> bool:
    return _role_value(role) in {_role_value(r) for r in allowed_roles}
