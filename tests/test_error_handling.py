"""Error chain: every failure maps to ``{error, message, statusCode}``."""

import pytest
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.testclient import TestClient
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from schoolportal.api.error_handling import (
    INTERNAL_ERROR_MESSAGE,
    register_exception_handlers,
    resolve_error,
)
from schoolportal.logging import sanitize_error_message
from schoolportal.service.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InsufficientPermissionsError,
    InternalError,
    InvalidCredentialsError,
    InvalidStateError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UnauthorizedError,
    ValidationError,
)
from schoolportal.storage.errors import ConstraintViolation


class TestResolveError:
    @pytest.mark.parametrize(
        "exc,status,kind",
        [
            (ValidationError("bad"), 400, "ValidationError"),
            (InvalidStateError("bad"), 400, "InvalidState"),
            (UnauthorizedError("no"), 401, "Unauthorized"),
            (InvalidCredentialsError("no"), 401, "InvalidCredentials"),
            (TokenExpiredError("no"), 401, "TokenExpired"),
            (TokenInvalidError("no"), 401, "TokenInvalid"),
            (ForbiddenError("no"), 403, "Forbidden"),
            (InsufficientPermissionsError("no"), 403, "InsufficientPermissions"),
            (NotFoundError("gone"), 404, "NotFound"),
            (AlreadyExistsError("dup"), 409, "AlreadyExists"),
        ],
    )
    def test_service_errors(self, exc, status, kind):
        status_code, body = resolve_error(exc)
        assert status_code == status
        assert body.error == kind
        assert body.message == exc.message
        assert body.status_code == status

    def test_internal_error_hides_message(self):
        status_code, body = resolve_error(InternalError("db password is hunter2"))
        assert status_code == 500
        assert body.message == INTERNAL_ERROR_MESSAGE

    def test_constraint_violation(self):
        status_code, body = resolve_error(ConstraintViolation("email already registered"))
        assert status_code == 409
        assert body.error == "AlreadyExists"

    def test_http_exception(self):
        status_code, body = resolve_error(StarletteHTTPException(status_code=404, detail="Not Found"))
        assert status_code == 404
        assert body.error == "NotFound"

    def test_http_server_error_is_masked(self):
        status_code, body = resolve_error(StarletteHTTPException(status_code=503, detail="pool exhausted"))
        assert status_code == 503
        assert body.error == "InternalError"
        assert body.message == INTERNAL_ERROR_MESSAGE

    def test_request_validation(self):
        exc = RequestValidationError(
            [{"loc": ("body", "email"), "msg": "field required", "type": "missing"}]
        )
        status_code, body = resolve_error(exc)
        assert status_code == 400
        assert body.error == "ValidationError"
        assert body.message == "email: field required"

    def test_unknown_exception(self):
        status_code, body = resolve_error(RuntimeError("boom"))
        assert status_code == 500
        assert body.error == "InternalError"
        assert "boom" not in body.message

    def test_body_serializes_camel_case(self):
        _, body = resolve_error(NotFoundError("gone"))
        assert body.model_dump(by_alias=True) == {
            "error": "NotFound",
            "message": "gone",
            "statusCode": 404,
        }


class _Payload(BaseModel):
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Access denied")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret detail")

    @app.post("/payload")
    async def payload(body: _Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    """Handlers installed on a bare app."""

    def test_service_error_body(self, client):
        response = client.get("/forbidden")
        assert response.status_code == 403
        assert response.json() == {
            "error": "Forbidden",
            "message": "Access denied",
            "statusCode": 403,
        }

    def test_unknown_route(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_method_not_allowed(self, client):
        response = client.delete("/forbidden")
        assert response.status_code == 405
        assert response.json()["error"] == "MethodNotAllowed"

    def test_validation_is_400(self, client):
        response = client.post("/payload", json={"count": "many"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["statusCode"] == 400
        assert body["message"].startswith("count:")

    def test_unexpected_exception(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json() == {
            "error": "InternalError",
            "message": INTERNAL_ERROR_MESSAGE,
            "statusCode": 500,
        }


class TestSanitizeErrorMessage:
    def test_strips_credentials_and_paths(self):
        message = sanitize_error_message("password=hunter2 at /var/lib/app/secrets.txt")
        assert "hunter2" not in message
        assert "/var/lib" not in message

    def test_plain_message_kept(self):
        assert sanitize_error_message("Invalid or expired OAuth state") == (
            "Invalid or expired OAuth state"
        )

    def test_empty(self):
        assert sanitize_error_message("") == "An error occurred"
