from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Cookie, Depends, Query, Response
from fastapi.responses import RedirectResponse

from schoolportal.api.schemas import (
    AdminCreateUserRequest,
    ChangePasswordRequest,
    LoginRequest,
    OAuthAccountListResponse,
    OAuthAccountResponse,
    PageMeta,
    RegisterRequest,
    SuccessResponse,
    UpdateRoleRequest,
    UserEnvelope,
    UserListResponse,
    UserResponse,
)
from schoolportal.logging import get_logger, sanitize_error_message
from schoolportal.service.auth import SUSPENDED_MESSAGE, AuthContext
from schoolportal.service.errors import (
    ForbiddenError,
    InsufficientPermissionsError,
    ServiceError,
    UnauthorizedError,
)
from schoolportal.service.permissions import Permission, Role, has_permission, role_allows
from schoolportal.service.runtime import get_runtime
from schoolportal.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter()

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


async def get_principal(
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    return await get_runtime().auth.authenticate(access_token)


def require_roles(*roles: Role):
    """Dependency factory rejecting principals whose role is not in ``roles``."""

    async def _guard(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not role_allows(principal.role, roles):
            required = ", ".join(r.value for r in roles)
            raise ForbiddenError(
                f"Access denied. Required role: {required}",
                detail={"required_roles": [r.value for r in roles]},
            )
        return principal

    return _guard


def require_permission(permission: Permission):
    async def _guard(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not has_permission(principal.role, permission):
            raise InsufficientPermissionsError(
                f"Missing permission: {permission.value}",
                detail={"permission": permission.value},
            )
        return principal

    return _guard


def _cookie_domain() -> Optional[str]:
    return get_runtime().settings.cookie_domain or None


def _apply_session_cookies(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    common = {
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": "lax",
        "path": "/",
        "domain": _cookie_domain(),
    }
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        **common,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
        **common,
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=_cookie_domain(),
            secure=secure,
            httponly=True,
            samesite="lax",
        )


def _with_query(url: str, params: dict) -> str:
    parts = urlsplit(url)
    query = "&".join(q for q in (parts.query, urlencode(params)) if q)
    return urlunsplit(parts._replace(query=query))


# auth
@router.post("/auth/register", response_model=UserEnvelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    result = await get_runtime().auth.register(body.email, body.password, body.name)
    _apply_session_cookies(response, result.tokens)
    return UserEnvelope(user=UserResponse.from_user(result.user))


@router.post("/auth/login", response_model=UserEnvelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    result = await get_runtime().auth.login(body.email, body.password)
    _apply_session_cookies(response, result.tokens)
    return UserEnvelope(user=UserResponse.from_user(result.user))


@router.post("/auth/refresh", response_model=SuccessResponse, tags=["auth"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    if not refresh_token:
        raise UnauthorizedError("Refresh token missing")
    result = await get_runtime().auth.refresh(refresh_token)
    _apply_session_cookies(response, result.tokens)
    return SuccessResponse()


@router.post("/auth/logout", response_model=SuccessResponse, tags=["auth"])
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    await get_runtime().auth.logout(refresh_token)
    _clear_session_cookies(response)
    return SuccessResponse(message="Logged out")


@router.get("/auth/me", response_model=UserEnvelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    user = principal.user or get_runtime().users.get_user(principal.user_id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/auth/password", response_model=SuccessResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    principal: AuthContext = Depends(get_principal),
):
    await get_runtime().auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    # every session was revoked, so the caller signs in again
    _clear_session_cookies(response)
    return SuccessResponse(message="Password changed")


# oauth
@router.get("/auth/oauth/accounts", response_model=OAuthAccountListResponse, tags=["oauth"])
async def list_oauth_accounts(principal: AuthContext = Depends(get_principal)):
    accounts = await get_runtime().auth.list_oauth_accounts(principal.user_id)
    return OAuthAccountListResponse(
        items=[
            OAuthAccountResponse(
                provider=a.provider,
                provider_account_id=a.provider_account_id,
                created_at=a.created_at,
            )
            for a in accounts
        ]
    )


@router.get("/auth/oauth/{provider}", tags=["oauth"])
async def oauth_start(
    provider: str,
    link: bool = Query(False),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    runtime = get_runtime()
    link_user_id = None
    if link:
        principal = await runtime.auth.authenticate(access_token)
        link_user_id = principal.user_id
    start = await runtime.auth.start_oauth(provider, link_user_id=link_user_id)
    return RedirectResponse(start["authorization_url"], status_code=302)


@router.get("/auth/oauth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    runtime = get_runtime()
    settings = runtime.settings
    if error or not code or not state:
        message = "OAuth authorization was denied" if error else "Missing code or state"
        logger.warning("oauth_callback_rejected", provider=provider, reason=message)
        return RedirectResponse(
            _with_query(settings.oauth_error_redirect, {"error": message}), status_code=302
        )
    try:
        result = await runtime.auth.complete_oauth(provider, code, state)
    except ServiceError as exc:
        message = (
            SUSPENDED_MESSAGE
            if isinstance(exc, ForbiddenError)
            else sanitize_error_message(exc.message)
        )
        if exc.status_code >= 500:
            message = "Authentication failed"
        logger.warning(
            "oauth_callback_failed", provider=provider, error_kind=exc.error_code
        )
        return RedirectResponse(
            _with_query(settings.oauth_error_redirect, {"error": message}), status_code=302
        )
    redirect = RedirectResponse(
        _with_query(settings.oauth_success_redirect, {"success": "true"}), status_code=302
    )
    _apply_session_cookies(redirect, result.tokens)
    return redirect


@router.delete("/auth/oauth/{provider}", response_model=SuccessResponse, tags=["oauth"])
async def unlink_oauth(provider: str, principal: AuthContext = Depends(get_principal)):
    await get_runtime().auth.unlink_oauth_account(principal.user_id, provider)
    return SuccessResponse(message=f"Unlinked {provider}")


# admin
_admin = require_roles(Role.ADMIN)


@router.get("/admin/users", response_model=UserListResponse, tags=["admin"])
async def admin_list_users(
    page: int = Query(1),
    limit: int = Query(20),
    role: Optional[Role] = Query(None),
    suspended: Optional[bool] = Query(None),
    search: Optional[str] = Query(None, max_length=255),
    principal: AuthContext = Depends(require_permission(Permission.USERS_READ)),
):
    result = get_runtime().users.list_users(
        page,
        limit,
        role=role.value if role else None,
        suspended=suspended,
        search=search,
    )
    return UserListResponse(
        items=[UserResponse.from_user(u) for u in result.items],
        meta=PageMeta(
            page=result.page,
            limit=result.limit,
            total_items=result.total_items,
            total_pages=result.total_pages,
            has_next_page=result.has_next_page,
            has_prev_page=result.has_prev_page,
        ),
    )


@router.post("/admin/users", response_model=UserEnvelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest, principal: AuthContext = Depends(_admin)
):
    user = get_runtime().users.create_user(
        body.email, body.password, body.name, body.role.value
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.get("/admin/users/{user_id}", response_model=UserEnvelope, tags=["admin"])
async def admin_get_user(user_id: str, principal: AuthContext = Depends(_admin)):
    return UserEnvelope(user=UserResponse.from_user(get_runtime().users.get_user(user_id)))


@router.patch("/admin/users/{user_id}/role", response_model=UserEnvelope, tags=["admin"])
async def admin_change_role(
    user_id: str, body: UpdateRoleRequest, principal: AuthContext = Depends(_admin)
):
    user = await get_runtime().users.change_role(
        user_id, body.role.value, actor_id=principal.user_id
    )
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/suspend", response_model=UserEnvelope, tags=["admin"])
async def admin_suspend_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission(Permission.USERS_SUSPEND)),
):
    user = await get_runtime().users.suspend_user(user_id, actor_id=principal.user_id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.post("/admin/users/{user_id}/unsuspend", response_model=UserEnvelope, tags=["admin"])
async def admin_unsuspend_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission(Permission.USERS_UNSUSPEND)),
):
    user = get_runtime().users.unsuspend_user(user_id)
    return UserEnvelope(user=UserResponse.from_user(user))


@router.delete("/admin/users/{user_id}", response_model=SuccessResponse, tags=["admin"])
async def admin_delete_user(
    user_id: str,
    principal: AuthContext = Depends(require_permission(Permission.USERS_DELETE)),
):
    get_runtime().users.delete_user(user_id, actor_id=principal.user_id)
    return SuccessResponse(message="User deleted")
