from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from schoolportal.logging import get_logger
from schoolportal.storage.errors import ConstraintViolation
from schoolportal.storage.models import OAuthAccount, Session, User, utcnow

SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student'
            CHECK (role IN ('admin', 'teacher', 'student')),
        password_hash TEXT,
        suspended BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS oauth_accounts (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_account_id TEXT NOT NULL,
        access_token TEXT,
        refresh_token TEXT,
        id_token TEXT,
        token_type TEXT,
        scope TEXT,
        expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_account_id),
        UNIQUE (user_id, provider)
    )
    """,
)

_USER_COLUMNS = "id, email, name, role, password_hash, suspended, created_at, updated_at"
_SESSION_COLUMNS = "id, user_id, token, expires_at, created_at, updated_at"
_OAUTH_COLUMNS = (
    "id, user_id, provider, provider_account_id, access_token, refresh_token, "
    "id_token, token_type, scope, expires_at, created_at, updated_at"
)


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        role=row["role"],
        password_hash=row.get("password_hash"),
        suspended=bool(row.get("suspended", False)),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _session_from_row(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _oauth_from_row(row: dict) -> OAuthAccount:
    return OAuthAccount(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        provider=row["provider"],
        provider_account_id=row["provider_account_id"],
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        id_token=row.get("id_token"),
        token_type=row.get("token_type"),
        scope=row.get("scope"),
        expires_at=row.get("expires_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _user_filters(
    role: Optional[str], suspended: Optional[bool], search: Optional[str]
) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if role is not None:
        clauses.append("role = %s")
        params.append(role)
    if suspended is not None:
        clauses.append("suspended = %s")
        params.append(suspended)
    if search:
        pattern = f"%{_escape_like(search.lower())}%"
        clauses.append(
            "(lower(email) LIKE %s ESCAPE '\\' OR lower(name) LIKE %s ESCAPE '\\')"
        )
        params.extend([pattern, pattern])
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, params


class PostgresStore:
    """Postgres-backed store for users, refresh sessions and OAuth links."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_DDL:
                conn.execute(statement)

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
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, name, role, password_hash, suspended)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, normalized, name, role, password_hash, suspended),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[User]:
        where, params = _user_filters(role, suspended, search)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users{where} "
                "ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def count_users(
        self,
        *,
        role: Optional[str] = None,
        suspended: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> int:
        where, params = _user_filters(role, suspended, search)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM users{where}", tuple(params)
            ).fetchone()
        return int(row["total"]) if row else 0

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET role = %s, updated_at = now() WHERE id = %s "
                f"RETURNING {_USER_COLUMNS}",
                (role, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_suspended(self, user_id: str, suspended: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET suspended = %s, updated_at = now() WHERE id = %s "
                f"RETURNING {_USER_COLUMNS}",
                (suspended, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        normalized = email.strip().lower() if email is not None else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE users
                    SET name = COALESCE(%s, name),
                        email = COALESCE(%s, email),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (name, normalized, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: Optional[str]) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def delete_user(self, user_id: str) -> bool:
        # sessions and oauth_accounts go with the user via ON DELETE CASCADE
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # sessions
    def create_session(self, user_id: str, token: str, ttl_seconds: int) -> Session:
        session_id = str(uuid.uuid4())
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO sessions (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (session_id, user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        return _session_from_row(row)

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions "
                "WHERE token = %s AND expires_at > now()",
                (token,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE token = %s", (token,))
            return cur.rowcount > 0

    def rotate_session(
        self, old_token: str, new_token: str, user_id: str, ttl_seconds: int
    ) -> Optional[Session]:
        """Atomically consume ``old_token`` and insert ``new_token``.

        The DELETE acts as the claim: of two concurrent rotations of the same
        token only one sees a returned row, the other gets None.
        """
        session_id = str(uuid.uuid4())
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        try:
            with self._connect() as conn, conn.transaction():
                claimed = conn.execute(
                    """
                    DELETE FROM sessions
                    WHERE token = %s AND user_id = %s AND expires_at > now()
                    RETURNING id
                    """,
                    (old_token, user_id),
                ).fetchone()
                if not claimed:
                    return None
                row = conn.execute(
                    f"""
                    INSERT INTO sessions (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_SESSION_COLUMNS}
                    """,
                    (session_id, user_id, new_token, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        self.logger.debug("session_rotated", user_id=user_id, session_id=session_id)
        return _session_from_row(row)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM sessions "
                "WHERE user_id = %s AND expires_at > now() ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE expires_at <= now()")
            purged = cur.rowcount
        if purged:
            self.logger.info("expired_sessions_purged", count=purged)
        return purged

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO oauth_accounts (
                        id, user_id, provider, provider_account_id, access_token,
                        refresh_token, id_token, token_type, scope, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_OAUTH_COLUMNS}
                    """,
                    (
                        account_id,
                        user_id,
                        provider,
                        provider_account_id,
                        access_token,
                        refresh_token,
                        id_token,
                        token_type,
                        scope,
                        expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider account already linked", {"provider": provider}
            )
        return _oauth_from_row(row)

    def get_oauth_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_OAUTH_COLUMNS} FROM oauth_accounts "
                "WHERE provider = %s AND provider_account_id = %s",
                (provider, provider_account_id),
            ).fetchone()
        return _oauth_from_row(row) if row else None

    def get_user_oauth_account(
        self, user_id: str, provider: str
    ) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_OAUTH_COLUMNS} FROM oauth_accounts "
                "WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            ).fetchone()
        return _oauth_from_row(row) if row else None

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_OAUTH_COLUMNS} FROM oauth_accounts "
                "WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_oauth_from_row(row) for row in rows]

    def update_oauth_tokens(
        self,
        account_id: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        id_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Optional[OAuthAccount]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE oauth_accounts
                SET access_token = COALESCE(%s, access_token),
                    refresh_token = COALESCE(%s, refresh_token),
                    id_token = COALESCE(%s, id_token),
                    expires_at = COALESCE(%s, expires_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING {_OAUTH_COLUMNS}
                """,
                (access_token, refresh_token, id_token, expires_at, account_id),
            ).fetchone()
        return _oauth_from_row(row) if row else None

    def delete_oauth_account(self, user_id: str, provider: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_accounts WHERE user_id = %s AND provider = %s",
                (user_id, provider),
            )
            return cur.rowcount > 0

    def close(self) -> None:
        self.pool.close()
