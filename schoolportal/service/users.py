from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Generic, List, Optional, TypeVar

from schoolportal.logging import get_logger
from schoolportal.service.auth import AuthService
from schoolportal.service.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schoolportal.service.passwords import hash_password
from schoolportal.service.permissions import Role, parse_role
from schoolportal.storage.errors import ConstraintViolation
from schoolportal.storage.models import User

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100

T = TypeVar("T")


def calculate_offset(page: int, limit: int) -> int:
    if page < 1:
        raise ValidationError("page must be at least 1", detail={"page": page})
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(
            f"limit must be between 1 and {MAX_PAGE_SIZE}", detail={"limit": limit}
        )
    return (page - 1) * limit


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, items: List[T], page: int, limit: int, total: int) -> "Page[T]":
        total_pages = math.ceil(total / limit) if total else 0
        return cls(
            items=items,
            page=page,
            limit=limit,
            total_items=total,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class UserService:
    """Admin-side user management: listing, roles, suspension and deletion."""

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def list_users(
        self,
        page: int = 1,
        limit: int = 20,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> Page[User]:
        offset = calculate_offset(page, limit)
        role_value = parse_role(role).value if role is not None else None
        search = search.strip() if search else None
        items = self.store.list_users(
            role=role_value, suspended=suspended, search=search, limit=limit, offset=offset
        )
        total = self.store.count_users(role=role_value, suspended=suspended, search=search)
        return Page.build(items, page, limit, total)

    def create_user(
        self, email: str, password: str, name: str, role: str = Role.STUDENT.value
    ) -> User:
        role_value = parse_role(role).value
        normalized = email.strip().lower()
        if self.store.get_user_by_email(normalized):
            raise AlreadyExistsError(
                "User with this email already exists", detail={"field": "email"}
            )
        try:
            user = self.store.create_user(
                normalized,
                name.strip(),
                role=role_value,
                password_hash=hash_password(password),
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError(
                "User with this email already exists", detail={"field": "email"}
            ) from exc
        logger.info("admin_user_created", user_id=user.id, role=role_value)
        return user

    def _is_last_admin(self, user: User) -> bool:
        # a suspended admin is never the last active one
        if user.role != Role.ADMIN.value or user.suspended:
            return False
        return self.store.count_users(role=Role.ADMIN.value, suspended=False) <= 1

    async def change_role(self, user_id: str, role: str, *, actor_id: str) -> User:
        role_value = parse_role(role).value
        if user_id == actor_id:
            raise ForbiddenError("You cannot change your own role")
        user = self.get_user(user_id)
        if user.role == role_value:
            return user
        if self._is_last_admin(user):
            raise InvalidStateError("Cannot demote the last admin")
        updated = self.store.update_user_role(user_id, role_value)
        if not updated:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        # outstanding refresh tokens would otherwise mint tokens for the old role
        await self.auth.logout_all(user_id)
        logger.info("user_role_changed", user_id=user_id, role=role_value, actor_id=actor_id)
        return updated

    async def suspend_user(self, user_id: str, *, actor_id: str) -> User:
        if user_id == actor_id:
            raise ForbiddenError("You cannot suspend yourself")
        user = self.get_user(user_id)
        if user.suspended:
            return user
        if self._is_last_admin(user):
            raise InvalidStateError("Cannot suspend the last admin")
        updated = self.store.set_user_suspended(user_id, True)
        await self.auth.logout_all(user_id)
        logger.warning("user_suspended", user_id=user_id, actor_id=actor_id)
        return updated

    def unsuspend_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user.suspended:
            return user
        updated = self.store.set_user_suspended(user_id, False)
        logger.info("user_unsuspended", user_id=user_id)
        return updated

    def delete_user(self, user_id: str, *, actor_id: str) -> None:
        if user_id == actor_id:
            raise ForbiddenError("You cannot delete your own account")
        user = self.get_user(user_id)
        if self._is_last_admin(user):
            raise InvalidStateError("Cannot delete the last admin")
        self.store.delete_user(user_id)
        logger.warning("user_deleted", user_id=user_id, actor_id=actor_id)
