from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries the HTTP ``status_code`` it maps to and an
    ``error_code`` naming the error kind, which is what clients see in the
    ``error`` field of the response body:

    - NotFound (404)
    - Unauthorized, InvalidCredentials, TokenExpired, TokenInvalid (401)
    - Forbidden, InsufficientPermissions (403)
    - AlreadyExists (409)
    - ValidationError, InvalidState (400)
    - InternalError (500)
    """

    status_code: int = 400
    error_code: str = "ValidationError"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "ValidationError"


class InvalidStateError(ServiceError):
    """Operation is not valid in the resource's current state (400)."""
    status_code = 400
    error_code = "InvalidState"


class UnauthorizedError(ServiceError):
    """Authentication missing or failed (401)."""
    status_code = 401
    error_code = "Unauthorized"


class InvalidCredentialsError(ServiceError):
    """Login credentials were rejected (401)."""
    status_code = 401
    error_code = "InvalidCredentials"


class TokenExpiredError(ServiceError):
    """A signed token is past its expiry (401)."""
    status_code = 401
    error_code = "TokenExpired"


class TokenInvalidError(ServiceError):
    """A token is malformed, tampered with, or no longer backed by a session (401)."""
    status_code = 401
    error_code = "TokenInvalid"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "Forbidden"


class InsufficientPermissionsError(ForbiddenError):
    """Role lacks the permission required for the action (403)."""
    error_code = "InsufficientPermissions"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NotFound"


class AlreadyExistsError(ServiceError):
    """Resource conflicts with an existing one (409)."""
    status_code = 409
    error_code = "AlreadyExists"


class InternalError(ServiceError):
    """Internal failure; the message is never shown to clients (500)."""
    status_code = 500
    error_code = "InternalError"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "AlreadyExistsError",
    "InternalError",
]
