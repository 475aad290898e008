from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from schoolportal.logging import get_logger
from schoolportal.storage.errors import ConstraintViolation
from schoolportal.storage.models import OAuthAccount, Session, User, utcnow


def _matches(
    user: User,
    role: Optional[str],
    suspended: Optional[bool],
    search: Optional[str],
) -> bool:
    if role is not None and user.role != role:
        return False
    if suspended is not None and user.suspended != suspended:
        return False
    if search:
        needle = search.lower()
        if needle not in user.email.lower() and needle not in user.name.lower():
            return False
    return True


class MemoryStore:
    """In-memory backing store used in tests and local development.

    Mirrors the PostgresStore surface, including cascade deletes from users to
    sessions and OAuth links, and the atomic refresh-token rotation.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}  # keyed by refresh token
        self.oauth_accounts: Dict[str, OAuthAccount] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str = "student",
        password_hash: Optional[str] = None,
        suspended: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                password_hash=password_hash,
                suspended=suspended,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        with self._data_lock:
            results = [
                u for u in self.users.values() if _matches(u, role, suspended, search)
            ]
        results.sort(key=lambda u: u.created_at, reverse=True)
        return results[offset : offset + limit]

    def count_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1 for u in self.users.values() if _matches(u, role, suspended, search)
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = utcnow()
            return user

    def set_user_suspended(self, user_id: str, suspended: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.suspended = suspended
            user.updated_at = utcnow()
            return user

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                normalized = email.strip().lower()
                clash = self.get_user_by_email(normalized)
                if clash and clash.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = normalized
            if name is not None:
                user.name = name
            user.updated_at = utcnow()
            return user

    def save_password(self, user_id: str, password_hash: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.updated_at = utcnow()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for token, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(token, None)
            for account_id, account in list(self.oauth_accounts.items()):
                if account.user_id == user_id:
                    self.oauth_accounts.pop(account_id, None)
            return True

    # sessions
    def _insert_session(self, user_id: str, token: str, ttl_seconds: int) -> Session:
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        if token in self.sessions:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        sess = Session.new(user_id=user_id, token=token, ttl_seconds=ttl_seconds)
        self.sessions[token] = sess
        return sess

    def create_session(self, user_id: str, token: str, ttl_seconds: int) -> Session:
        with self._data_lock:
            return self._insert_session(user_id, token, ttl_seconds)

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token)
            if sess is None:
                return None
            if sess.is_expired():
                self.sessions.pop(token, None)
                return None
            return sess

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(token, None) is not None

    def rotate_session(
        self, old_token: str, new_token: str, user_id: str, ttl_seconds: int
    ) -> Optional[Session]:
        """Claim ``old_token`` and replace it with ``new_token`` in one step.

        Returns None without changing anything when the old token is unknown,
        expired, or owned by another user.
        """
        with self._data_lock:
            current = self.sessions.get(old_token)
            if current is None or current.user_id != user_id:
                return None
            if current.is_expired():
                self.sessions.pop(old_token, None)
                return None
            self.sessions.pop(old_token, None)
            return self._insert_session(user_id, new_token, ttl_seconds)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, s in self.sessions.items() if s.user_id == user_id]
            for token in stale:
                self.sessions.pop(token, None)
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and not s.is_expired(now)
            ]

    def purge_expired_sessions(self) -> int:
        now = utcnow()
        with self._data_lock:
            expired = [t for t, s in self.sessions.items() if s.is_expired(now)]
            for token in expired:
                self.sessions.pop(token, None)
        if expired:
            self.logger.info("expired_sessions_purged", count=len(expired))
        return len(expired)

    # oauth accounts
    def create_oauth_account(
        self,
        user_id: str,
        provider: str,
        provider_account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        id_token: Optional[str] = None,
        token_type: Optional[str] = "Bearer",
        scope: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> OAuthAccount:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for existing in self.oauth_accounts.values():
                if (
                    existing.provider == provider
                    and existing.provider_account_id == provider_account_id
                ):
                    raise ConstraintViolation(
                        "provider account already linked",
                        {"provider": provider},
                    )
                if existing.user_id == user_id and existing.provider == provider:
                    raise ConstraintViolation(
                        "user already linked to provider", {"provider": provider}
                    )
            account = OAuthAccount(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider=provider,
                provider_account_id=provider_account_id,
                access_token=access_token,
                refresh_token=refresh_token,
                id_token=id_token,
                token_type=token_type,
                scope=scope,
                expires_at=expires_at,
            )
            self.oauth_accounts[account.id] = account
            return account

    def get_oauth_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[OAuthAccount]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.oauth_accounts.values()
                    if a.provider == provider
                    and a.provider_account_id == provider_account_id
                ),
                None,
            )

    def get_user_oauth_account(
        self, user_id: str, provider: str
    ) -> Optional[OAuthAccount]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self.oauth_accounts.values()
                    if a.user_id == user_id and a.provider == provider
                ),
                None,
            )

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._data_lock:
            accounts = [a for a in self.oauth_accounts.values() if a.user_id == user_id]
        return sorted(accounts, key=lambda a: a.created_at, reverse=True)

    def update_oauth_tokens(
        self,
        account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        id_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[OAuthAccount]:
        with self._data_lock:
            account = self.oauth_accounts.get(account_id)
            if not account:
                return None
            # providers omit refresh and id tokens on re-consent; keep the stored ones
            if access_token is not None:
                account.access_token = access_token
            if refresh_token is not None:
                account.refresh_token = refresh_token
            if id_token is not None:
                account.id_token = id_token
            if expires_at is not None:
                account.expires_at = expires_at
            account.updated_at = utcnow()
            return account

    def delete_oauth_account(self, user_id: str, provider: str) -> bool:
        with self._data_lock:
            account = self.get_user_oauth_account(user_id, provider)
            if not account:
                return False
            self.oauth_accounts.pop(account.id, None)
            return True

    def close(self) -> None:
        return None
