from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple
from urllib.parse import urlencode

import httpx

from schoolportal.config import Settings
from schoolportal.logging import get_logger
from schoolportal.service.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidStateError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UnauthorizedError,
    ValidationError,
)
from schoolportal.service.passwords import (
    MalformedHashError,
    hash_password,
    verify_password,
)
from schoolportal.service.permissions import Role
from schoolportal.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from schoolportal.storage.errors import ConstraintViolation
from schoolportal.storage.models import OAuthAccount, Session, User
from schoolportal.storage.redis_cache import RedisCache

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
SUSPENDED_MESSAGE = "Your account has been suspended"
INVALID_AUTH_TOKEN_MESSAGE = "Invalid or expired authentication token"

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str = "student",
        password_hash: Optional[str] = None,
        suspended: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: Optional[str]) -> None: ...

    def create_session(self, user_id: str, token: str, ttl_seconds: int) -> Session: ...

    def delete_session(self, token: str) -> bool: ...

    def rotate_session(
        self, old_token: str, new_token: str, user_id: str, ttl_seconds: int
    ) -> Optional[Session]: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def create_oauth_account(
        self, user_id: str, provider: str, provider_account_id: str, **tokens: Any
    ) -> OAuthAccount: ...

    def get_oauth_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[OAuthAccount]: ...

    def get_user_oauth_account(
        self, user_id: str, provider: str
    ) -> Optional[OAuthAccount]: ...

    def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]: ...

    def update_oauth_tokens(self, account_id: str, **tokens: Any) -> Optional[OAuthAccount]: ...

    def delete_oauth_account(self, user_id: str, provider: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    user: Optional[User] = None


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass
class OAuthResult:
    user: User
    tokens: TokenPair
    is_new_user: bool = False


@dataclass
class OAuthIdentity:
    """Normalized identity returned by a provider's userinfo endpoint."""

    provider_account_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    raw: dict = field(default_factory=dict)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _provider_token_fields(provider_tokens: Optional[dict]) -> dict:
    if not provider_tokens:
        return {}
    expires_at = None
    expires_in = provider_tokens.get("expires_in")
    if isinstance(expires_in, (int, float)) and expires_in > 0:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
    return {
        "access_token": provider_tokens.get("access_token"),
        "refresh_token": provider_tokens.get("refresh_token"),
        "id_token": provider_tokens.get("id_token"),
        "expires_at": expires_at,
    }


class AuthService:
    """Registration, login, OAuth and refresh-token rotation.

    Every successful sign-in issues an access/refresh pair and records the
    refresh token in the store as a session. Access tokens are checked
    statelessly by :meth:`authenticate`; only :meth:`refresh` and the logout
    methods touch stored sessions.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        tokens: TokenIssuer,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.logger = logger
        # In-process OAuth state for deployments without Redis
        self._state_lock = threading.Lock()
        self._oauth_states: dict[str, Tuple[str, datetime, Optional[str]]] = {}
        self._oauth_code_registry: dict[tuple[str, str], dict] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def _refresh_ttl_seconds(self) -> int:
        return int(self.tokens.refresh_ttl.total_seconds())

    def _start_session(self, user: User) -> TokenPair:
        pair = self.tokens.issue_pair(user.id, user.role)
        self.store.create_session(user.id, pair.refresh_token, self._refresh_ttl_seconds)
        return pair

    # password flows
    async def register(self, email: str, password: str, name: str) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("Registration is disabled")
        normalized = _normalize_email(email)
        if self.store.get_user_by_email(normalized):
            raise AlreadyExistsError(
                "User with this email already exists", detail={"field": "email"}
            )
        password_hash = hash_password(password)
        try:
            user = self.store.create_user(
                normalized,
                name.strip(),
                role=Role.STUDENT.value,
                password_hash=password_hash,
            )
        except ConstraintViolation as exc:
            raise AlreadyExistsError(
                "User with this email already exists", detail={"field": "email"}
            ) from exc
        tokens = self._start_session(user)
        self.logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def login(self, email: str, password: str) -> AuthResult:
        user = self.store.get_user_by_email(_normalize_email(email))
        if not user:
            self.logger.warning("login_failed", reason="unknown_user")
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not user.password_hash:
            self.logger.warning("login_failed", reason="oauth_only", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        try:
            matches = verify_password(password, user.password_hash)
        except MalformedHashError:
            self.logger.error("password_hash_malformed", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if not matches:
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if user.suspended:
            self.logger.warning("login_failed", reason="suspended", user_id=user.id)
            raise ForbiddenError(SUSPENDED_MESSAGE)
        tokens = self._start_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        revoke_sessions: bool = True,
    ) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not user.password_hash:
            raise InvalidStateError("Account has no password to change")
        try:
            matches = verify_password(current_password, user.password_hash)
        except MalformedHashError:
            self.logger.error("password_hash_malformed", user_id=user.id)
            matches = False
        if not matches:
            self.logger.warning("password_change_failed", user_id=user.id)
            raise InvalidCredentialsError("Current password is incorrect")
        self.store.save_password(user.id, hash_password(new_password))
        revoked = self.store.delete_user_sessions(user.id) if revoke_sessions else 0
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)

    # sessions
    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, consuming the old one.

        The old token is claimed and replaced in a single store operation, so
        replaying it afterwards (or racing a second refresh) raises
        :class:`TokenInvalidError`.
        """
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        user = self.store.get_user(claims.user_id)
        if not user:
            self.store.delete_session(refresh_token)
            raise UnauthorizedError("User not found")
        if user.suspended:
            self.store.delete_session(refresh_token)
            raise ForbiddenError(SUSPENDED_MESSAGE)
        pair = self.tokens.issue_pair(user.id, user.role)
        rotated = self.store.rotate_session(
            refresh_token, pair.refresh_token, user.id, self._refresh_ttl_seconds
        )
        if rotated is None:
            self.logger.warning("refresh_token_replay_rejected", user_id=user.id)
            raise TokenInvalidError("Invalid or expired token")
        return AuthResult(user=user, tokens=pair)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        if self.store.delete_session(refresh_token):
            self.logger.info("logout_session_deleted")

    async def logout_all(self, user_id: str) -> int:
        revoked = self.store.delete_user_sessions(user_id)
        self.logger.info("logout_all", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise UnauthorizedError(INVALID_AUTH_TOKEN_MESSAGE)
        try:
            claims = self.tokens.verify(access_token, expected_type=ACCESS)
        except (TokenExpiredError, TokenInvalidError) as exc:
            raise UnauthorizedError(INVALID_AUTH_TOKEN_MESSAGE) from exc
        user = self.store.get_user(claims.user_id)
        if not user:
            self.logger.warning("access_token_user_missing", user_id=claims.user_id)
            raise UnauthorizedError(INVALID_AUTH_TOKEN_MESSAGE)
        if user.role != claims.role:
            # role changed since issue; force a refresh to pick up the new role
            self.logger.warning("access_token_role_stale", user_id=user.id)
            raise UnauthorizedError(INVALID_AUTH_TOKEN_MESSAGE)
        if user.suspended:
            raise ForbiddenError(SUSPENDED_MESSAGE)
        return AuthContext(user_id=user.id, role=user.role, user=user)

    # oauth
    def _check_provider(self, provider: str) -> str:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(
                f"Unsupported OAuth provider: {provider}", detail={"provider": provider}
            )
        return provider

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [
                state
                for state, (_, expires_at, _) in self._oauth_states.items()
                if expires_at <= now
            ]
            for state in expired:
                self._oauth_states.pop(state, None)
        return len(expired)

    async def start_oauth(
        self,
        provider: str,
        redirect_uri: Optional[str] = None,
        *,
        link_user_id: Optional[str] = None,
    ) -> dict:
        self._check_provider(provider)
        self.cleanup_expired_states()
        client_id, _ = self.settings.oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")

        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, expires_at, link_user_id)
        else:
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at, link_user_id)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def _pop_oauth_state(
        self, state: str
    ) -> Optional[Tuple[str, datetime, Optional[str]]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._oauth_states.pop(state, None)

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Pre-register the identity a code resolves to, for tests and offline runs."""

        self._oauth_code_registry[(provider, code)] = payload

    async def complete_oauth(self, provider: str, code: str, state: str) -> OAuthResult:
        self._check_provider(provider)
        stored = await self._pop_oauth_state(state)
        if not stored or stored[1] <= self._now() or stored[0] != provider:
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise InvalidStateError("Invalid or expired OAuth state")
        _, _, link_user_id = stored
        exchanged = await self._exchange_oauth_code(provider, code)
        if not exchanged:
            raise UnauthorizedError("OAuth authentication failed")
        identity, provider_tokens = exchanged
        return await self.oauth_callback(
            provider,
            identity,
            provider_tokens=provider_tokens,
            link_to_user_id=link_user_id,
        )

    async def _exchange_oauth_code(
        self, provider: str, code: str
    ) -> Optional[Tuple[OAuthIdentity, dict]]:
        registered = self._oauth_code_registry.pop((provider, code), None)
        if registered:
            identity = OAuthIdentity(
                provider_account_id=str(registered["provider_account_id"]),
                email=registered.get("email"),
                name=registered.get("name"),
                raw=registered,
            )
            return identity, registered.get("tokens") or {}

        client_id, client_secret = self.settings.oauth_credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                identity = self._parse_oauth_userinfo(provider, userinfo)
                if not identity.provider_account_id:
                    self.logger.error("oauth_identity_missing_uid", provider=provider)
                    return None

                if provider == "github" and not identity.email:
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        identity.email = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
        except httpx.HTTPStatusError as exc:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        self.logger.info(
            "oauth_exchange_success",
            provider=provider,
            provider_account_id=identity.provider_account_id,
        )
        return identity, token_result

    def _parse_oauth_userinfo(self, provider: str, userinfo: dict) -> OAuthIdentity:
        if provider == "google":
            uid, email, name = userinfo.get("id"), userinfo.get("email"), userinfo.get("name")
        elif provider == "github":
            uid = userinfo.get("id")
            email = userinfo.get("email")
            name = userinfo.get("name") or userinfo.get("login")
        else:
            uid = userinfo.get("id")
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            name = userinfo.get("displayName")
        return OAuthIdentity(
            provider_account_id=str(uid) if uid is not None else "",
            email=email,
            name=name,
            raw=userinfo,
        )

    async def oauth_callback(
        self,
        provider: str,
        identity: OAuthIdentity,
        *,
        provider_tokens: Optional[dict] = None,
        link_to_user_id: Optional[str] = None,
    ) -> OAuthResult:
        """Sign in (or link) through a provider identity.

        A provider account maps to at most one local user. Email matches are
        only followed for accounts without a password; an account with a
        password must sign in first and link explicitly.
        """
        self._check_provider(provider)
        if not identity.provider_account_id:
            raise ValidationError("OAuth identity is missing an account id")
        token_fields = _provider_token_fields(provider_tokens)
        is_new_user = False

        account = self.store.get_oauth_account(provider, identity.provider_account_id)
        if account:
            if link_to_user_id and account.user_id != link_to_user_id:
                self.logger.warning(
                    "oauth_link_conflict", provider=provider, user_id=link_to_user_id
                )
                raise AlreadyExistsError(
                    "This provider account is already linked to another user"
                )
            user = self.store.get_user(account.user_id)
            if not user:
                self.store.delete_oauth_account(account.user_id, provider)
                self.logger.warning("oauth_orphaned_link_removed", provider=provider)
                raise NotFoundError("User linked to this provider account no longer exists")
            if user.suspended:
                raise ForbiddenError(SUSPENDED_MESSAGE)
            if token_fields:
                self.store.update_oauth_tokens(account.id, **token_fields)
        else:
            if link_to_user_id:
                user = self.store.get_user(link_to_user_id)
                if not user:
                    raise NotFoundError("User not found")
            else:
                email = _normalize_email(identity.email) if identity.email else None
                user = self.store.get_user_by_email(email) if email else None
                if user and user.has_password:
                    self.logger.warning(
                        "oauth_autolink_refused", provider=provider, user_id=user.id
                    )
                    raise InvalidCredentialsError(
                        "An account with this email already exists. "
                        "Sign in with your password to link this provider."
                    )
                if not user:
                    if not email:
                        raise ValidationError("OAuth provider did not return an email")
                    try:
                        user = self.store.create_user(
                            email,
                            (identity.name or email.split("@")[0]).strip(),
                            role=Role.STUDENT.value,
                        )
                    except ConstraintViolation as exc:
                        raise AlreadyExistsError(
                            "User with this email already exists"
                        ) from exc
                    is_new_user = True
            if user.suspended:
                raise ForbiddenError(SUSPENDED_MESSAGE)
            if self.store.get_user_oauth_account(user.id, provider):
                raise AlreadyExistsError(f"Account is already linked to {provider}")
            try:
                self.store.create_oauth_account(
                    user.id,
                    provider,
                    identity.provider_account_id,
                    token_type=(provider_tokens or {}).get("token_type", "Bearer"),
                    scope=(provider_tokens or {}).get("scope"),
                    **token_fields,
                )
            except ConstraintViolation as exc:
                raise AlreadyExistsError(
                    "This provider account is already linked to another user"
                ) from exc
            self.logger.info(
                "oauth_account_linked", provider=provider, user_id=user.id, is_new_user=is_new_user
            )

        tokens = self._start_session(user)
        return OAuthResult(user=user, tokens=tokens, is_new_user=is_new_user)

    async def list_oauth_accounts(self, user_id: str) -> List[OAuthAccount]:
        return self.store.list_oauth_accounts(user_id)

    async def unlink_oauth_account(self, user_id: str, provider: str) -> None:
        self._check_provider(provider)
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.store.get_user_oauth_account(user_id, provider):
            raise NotFoundError(f"No {provider} account is linked")
        linked = self.store.list_oauth_accounts(user_id)
        if not user.has_password and len(linked) <= 1:
            raise InvalidStateError("Cannot unlink the only sign-in method")
        self.store.delete_oauth_account(user_id, provider)
        self.logger.info("oauth_account_unlinked", provider=provider, user_id=user_id)
