"""End-to-end cookie flows through the FastAPI app."""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from schoolportal.app import app
from schoolportal.service.runtime import get_runtime

PASSWORD = "Aa1!aaaa"
ADMIN_PASSWORD = "Adm1n!pass"


def _client() -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client():
    with _client() as c:
        yield c


@pytest.fixture
def admin_client():
    get_runtime().users.create_user("admin@school.test", ADMIN_PASSWORD, "Admin", "admin")
    c = _client()
    response = c.post(
        "/auth/login", json={"email": "admin@school.test", "password": ADMIN_PASSWORD}
    )
    assert response.status_code == 200
    return c


def _register(client, email="a@x.com", name="A"):
    return client.post(
        "/auth/register", json={"email": email, "password": PASSWORD, "name": name}
    )


def _replay_refresh(client, token):
    client.cookies.clear()
    return client.post("/auth/refresh", headers={"Cookie": f"refresh_token={token}"})


class TestPasswordFlow:
    """Register, login, me, refresh and logout over cookies."""

    def test_register_sets_cookies(self, client):
        response = _register(client, email="A@X.com", name=" A ")
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["email"] == "a@x.com"
        assert user["role"] == "student"
        assert "password_hash" not in user
        set_cookie = response.headers.get_list("set-cookie")
        assert any(c.startswith("access_token=") and "HttpOnly" in c for c in set_cookie)
        assert any(c.startswith("refresh_token=") and "HttpOnly" in c for c in set_cookie)

    def test_login_and_me(self, client):
        _register(client)
        client.cookies.clear()
        response = client.post("/auth/login", json={"email": "a@x.com", "password": PASSWORD})
        assert response.status_code == 200
        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["email"] == "a@x.com"

    def test_duplicate_registration(self, client):
        _register(client)
        response = _register(client)
        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyExists"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/auth/register", json={"email": "a@x.com", "password": "short", "name": "A"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_unencodable_password_is_validation_error(self, client):
        body = b'{"email": "a@x.com", "password": "Aa1!aaaa\\ud800", "name": "A"}'
        response = client.post(
            "/auth/register", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

        _register(client)
        login = client.post(
            "/auth/login",
            content=body.replace(b', "name": "A"', b""),
            headers={"Content-Type": "application/json"},
        )
        assert login.status_code == 400

    def test_bad_login(self, client):
        _register(client)
        response = client.post("/auth/login", json={"email": "a@x.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json() == {
            "error": "InvalidCredentials",
            "message": "Invalid email or password",
            "statusCode": 401,
        }

    def test_me_without_cookie(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_refresh_rotation_and_replay(self, client):
        _register(client)
        old = client.cookies.get("refresh_token")
        rotated = client.post("/auth/refresh")
        assert rotated.status_code == 200
        new = client.cookies.get("refresh_token")
        assert new and new != old

        replay = _replay_refresh(client, old)
        assert replay.status_code == 401
        assert replay.json()["error"] == "TokenInvalid"

        ok = _replay_refresh(client, new)
        assert ok.status_code == 200

    def test_refresh_without_cookie(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["message"] == "Refresh token missing"

    def test_logout_twice(self, client):
        _register(client)
        refresh_token = client.cookies.get("refresh_token")
        assert client.post("/auth/logout").status_code == 200
        assert client.post("/auth/logout").status_code == 200
        assert _replay_refresh(client, refresh_token).status_code == 401

    def test_change_password(self, client):
        _register(client)
        response = client.post(
            "/auth/password",
            json={"current_password": PASSWORD, "new_password": "Bb2@bbbb"},
        )
        assert response.status_code == 200
        login = client.post("/auth/login", json={"email": "a@x.com", "password": "Bb2@bbbb"})
        assert login.status_code == 200


class TestAdminRoutes:
    """Role and permission guards on the admin surface."""

    def test_list_users(self, admin_client):
        _register(_client(), email="s@x.com")
        response = admin_client.get("/admin/users", params={"role": "student"})
        assert response.status_code == 200
        body = response.json()
        assert [u["email"] for u in body["items"]] == ["s@x.com"]
        assert body["meta"]["total_items"] == 1

    def test_invalid_page_is_validation_error(self, admin_client):
        response = admin_client.get("/admin/users", params={"page": 0})
        assert response.status_code == 400

    def test_student_cannot_list(self, client):
        _register(client)
        response = client.get("/admin/users")
        assert response.status_code == 403
        assert response.json()["error"] == "InsufficientPermissions"

    def test_student_cannot_create(self, client):
        _register(client)
        response = client.post(
            "/admin/users",
            json={"email": "t@x.com", "password": PASSWORD, "name": "T", "role": "teacher"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

    def test_admin_creates_teacher(self, admin_client):
        response = admin_client.post(
            "/admin/users",
            json={"email": "t@x.com", "password": PASSWORD, "name": "T", "role": "teacher"},
        )
        assert response.status_code == 201
        assert response.json()["user"]["role"] == "teacher"

    def test_suspend_blocks_login_and_access(self, admin_client):
        student = _client()
        user_id = _register(student, email="s@x.com").json()["user"]["id"]

        response = admin_client.post(f"/admin/users/{user_id}/suspend")
        assert response.status_code == 200
        assert response.json()["user"]["suspended"] is True

        assert student.get("/auth/me").status_code == 403
        login = _client().post("/auth/login", json={"email": "s@x.com", "password": PASSWORD})
        assert login.status_code == 403
        assert login.json()["message"] == "Your account has been suspended"

        assert admin_client.post(f"/admin/users/{user_id}/unsuspend").status_code == 200
        login = _client().post("/auth/login", json={"email": "s@x.com", "password": PASSWORD})
        assert login.status_code == 200

    def test_role_change_invalidates_access_token(self, admin_client):
        student = _client()
        user_id = _register(student, email="s@x.com").json()["user"]["id"]
        response = admin_client.patch(f"/admin/users/{user_id}/role", json={"role": "teacher"})
        assert response.status_code == 200
        assert student.get("/auth/me").status_code == 401

    def test_admin_cannot_suspend_self(self, admin_client):
        admin_id = admin_client.get("/auth/me").json()["user"]["id"]
        response = admin_client.post(f"/admin/users/{admin_id}/suspend")
        assert response.status_code == 403

    def test_delete_user(self, admin_client):
        user_id = _register(_client(), email="s@x.com").json()["user"]["id"]
        assert admin_client.delete(f"/admin/users/{user_id}").status_code == 200
        response = admin_client.get(f"/admin/users/{user_id}")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"


class TestOAuthRoutes:
    def _start(self, client):
        response = client.get("/auth/oauth/google", follow_redirects=False)
        assert response.status_code == 302
        query = parse_qs(urlparse(response.headers["location"]).query)
        return query["state"][0]

    def test_callback_signs_in(self, client):
        state = self._start(client)
        get_runtime().auth.register_oauth_code(
            "google", "code-1", {"provider_account_id": "g-1", "email": "o@x.com", "name": "O"}
        )
        response = client.get(
            "/auth/oauth/google/callback",
            params={"code": "code-1", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert parse_qs(location.query)["success"] == ["true"]
        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.json()["user"]["has_password"] is False

        accounts = client.get("/auth/oauth/accounts")
        assert [a["provider"] for a in accounts.json()["items"]] == ["google"]

    def test_callback_bad_state_redirects_with_error(self, client):
        response = client.get(
            "/auth/oauth/google/callback",
            params={"code": "code-1", "state": "forged"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(get_runtime().settings.oauth_error_redirect)
        assert "error=" in location
        assert "access_token" not in response.headers.get("set-cookie", "")

    def test_provider_denied(self, client):
        response = client.get(
            "/auth/oauth/google/callback",
            params={"error": "access_denied"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert "error=" in response.headers["location"]

    def test_link_requires_session(self, client):
        response = client.get("/auth/oauth/google?link=true", follow_redirects=False)
        assert response.status_code == 401

    def test_unknown_provider(self, client):
        response = client.get("/auth/oauth/myspace", follow_redirects=False)
        assert response.status_code == 400


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/healthz").headers.get("X-Request-ID")

    def test_security_headers(self, client):
        response = client.get("/auth/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_unknown_route_body(self, client):
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["statusCode"] == 404
