from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, cast

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from schoolportal.api.schemas import ErrorBody
from schoolportal.logging import get_logger, sanitize_error_message
from schoolportal.service.errors import ServiceError
from schoolportal.storage.errors import ConstraintViolation

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal server error"

_HTTP_STATUS_KINDS = {
    400: "ValidationError",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "AlreadyExists",
}


@dataclass(frozen=True)
class ErrorRule:
    """One entry of the error chain: first rule whose predicate matches wins."""

    predicate: Callable[[BaseException], bool]
    status_code: Callable[[BaseException], int]
    body_builder: Callable[[BaseException], ErrorBody]


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        msg = str(error.get("msg", "invalid value"))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(messages) or "Invalid request"


def _body(kind: str, message: str, status_code: int) -> ErrorBody:
    return ErrorBody(error=kind, message=message, statusCode=status_code)


def _service_status(exc: BaseException) -> int:
    return cast(ServiceError, exc).status_code


def _service_body(exc: BaseException) -> ErrorBody:
    error = cast(ServiceError, exc)
    if error.status_code >= 500:
        return _body(error.error_code, INTERNAL_ERROR_MESSAGE, error.status_code)
    return _body(error.error_code, error.message, error.status_code)


def _http_body(exc: BaseException) -> ErrorBody:
    error = cast(StarletteHTTPException, exc)
    if error.status_code >= 500:
        return _body("InternalError", INTERNAL_ERROR_MESSAGE, error.status_code)
    kind = _HTTP_STATUS_KINDS.get(error.status_code, "ValidationError")
    return _body(kind, str(error.detail), error.status_code)


ERROR_RULES: List[ErrorRule] = [
    ErrorRule(
        predicate=lambda exc: isinstance(exc, RequestValidationError),
        status_code=lambda exc: 400,
        body_builder=lambda exc: _body("ValidationError", _validation_message(exc), 400),
    ),
    ErrorRule(
        predicate=lambda exc: isinstance(exc, ServiceError),
        status_code=_service_status,
        body_builder=_service_body,
    ),
    ErrorRule(
        predicate=lambda exc: isinstance(exc, ConstraintViolation),
        status_code=lambda exc: 409,
        body_builder=lambda exc: _body("AlreadyExists", exc.message, 409),
    ),
    ErrorRule(
        predicate=lambda exc: isinstance(exc, StarletteHTTPException),
        status_code=lambda exc: exc.status_code,
        body_builder=_http_body,
    ),
    # catch-all; must stay last
    ErrorRule(
        predicate=lambda exc: True,
        status_code=lambda exc: 500,
        body_builder=lambda exc: _body("InternalError", INTERNAL_ERROR_MESSAGE, 500),
    ),
]


def resolve_error(exc: BaseException) -> tuple[int, ErrorBody]:
    """Walk :data:`ERROR_RULES` top to bottom and build the response for ``exc``."""
    for rule in ERROR_RULES:
        if rule.predicate(exc):
            return rule.status_code(exc), rule.body_builder(exc)
    raise AssertionError("error chain has no catch-all rule")


def _log_error(request: Request, exc: BaseException, status_code: int, body: ErrorBody) -> None:
    context = {
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "error_kind": body.error,
    }
    if status_code >= 500:
        logger.error(
            "request_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
            exc_info=exc,
            **context,
        )
    else:
        logger.warning("request_rejected", message=body.message, **context)


def error_response(request: Request, exc: BaseException) -> JSONResponse:
    status_code, body = resolve_error(exc)
    _log_error(request, exc, status_code, body)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))


def register_exception_handlers(app: FastAPI) -> None:
    """Route every error through the rule chain."""

    async def handle(request: Request, exc: Exception) -> JSONResponse:
        return error_response(request, exc)

    for exc_type in (
        RequestValidationError,
        ServiceError,
        ConstraintViolation,
        StarletteHTTPException,
        Exception,
    ):
        app.add_exception_handler(exc_type, handle)
