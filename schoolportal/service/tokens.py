from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from schoolportal.config import Settings
from schoolportal.logging import get_logger
from schoolportal.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from schoolportal.service.permissions import Role

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

# Same message for expiry and tampering; only the kind and logs differ
_GENERIC_TOKEN_MESSAGE = "Invalid or expired token"


@dataclass
class TokenClaims:
    user_id: str
    token_type: str
    jti: str
    expires_at: datetime
    role: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class TokenIssuer:
    """Signs and verifies access and refresh JWTs.

    Access tokens carry the user's role so route guards can authorize without
    a database round trip. Refresh tokens carry only the subject and a random
    ``jti``; they are additionally tracked in the session store so they can be
    revoked and rotated before expiry.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required to sign tokens")
        self._secret = settings.jwt_secret
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode(self, payload: dict[str, Any]) -> str:
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def _base_claims(
        self, user_id: str, token_type: str, ttl: timedelta
    ) -> tuple[dict[str, Any], datetime]:
        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("user_id must be a non-empty string")
        now = self._now()
        expires_at = now + ttl
        claims = {
            "sub": user_id,
            "token_type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        return claims, expires_at

    def issue_access_token(
        self, user_id: str, role: str | Role, *, ttl: Optional[timedelta] = None
    ) -> str:
        try:
            role_value = Role(role).value
        except ValueError as exc:
            raise ValidationError(f"unknown role: {role}") from exc
        claims, _ = self._base_claims(user_id, ACCESS, ttl or self.access_ttl)
        claims["role"] = role_value
        return self._encode(claims)

    def issue_refresh_token(
        self, user_id: str, *, ttl: Optional[timedelta] = None
    ) -> str:
        claims, _ = self._base_claims(user_id, REFRESH, ttl or self.refresh_ttl)
        return self._encode(claims)

    def issue_pair(self, user_id: str, role: str | Role) -> TokenPair:
        now = self._now()
        return TokenPair(
            access_token=self.issue_access_token(user_id, role),
            refresh_token=self.issue_refresh_token(user_id),
            access_expires_at=now + self.access_ttl,
            refresh_expires_at=now + self.refresh_ttl,
        )

    def verify(self, token: str, *, expected_type: str = ACCESS) -> TokenClaims:
        """Decode ``token`` and check signature, expiry, issuer, audience and type.

        Raises:
            TokenExpiredError: the token is past ``exp``.
            TokenInvalidError: anything else is wrong with the token.
        """
        if not isinstance(token, str) or not token:
            raise TokenInvalidError(_GENERIC_TOKEN_MESSAGE)
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "sub", "jti", "token_type"]},
            )
        except jwt.ExpiredSignatureError as exc:
            logger.info("token_expired", expected_type=expected_type)
            raise TokenExpiredError(_GENERIC_TOKEN_MESSAGE) from exc
        except jwt.InvalidTokenError as exc:
            logger.warning(
                "token_invalid",
                expected_type=expected_type,
                reason=type(exc).__name__,
            )
            raise TokenInvalidError(_GENERIC_TOKEN_MESSAGE) from exc

        token_type = payload.get("token_type")
        if token_type != expected_type:
            logger.warning(
                "token_type_mismatch", expected_type=expected_type, token_type=token_type
            )
            raise TokenInvalidError(_GENERIC_TOKEN_MESSAGE)
        role = payload.get("role")
        if token_type == ACCESS and role not in {r.value for r in Role}:
            logger.warning("token_role_invalid")
            raise TokenInvalidError(_GENERIC_TOKEN_MESSAGE)
        if not isinstance(payload.get("sub"), str):
            raise TokenInvalidError(_GENERIC_TOKEN_MESSAGE)

        return TokenClaims(
            user_id=payload["sub"],
            token_type=token_type,
            jti=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            role=role,
        )
