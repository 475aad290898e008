"""Unit tests for JWT access and refresh tokens."""

from datetime import timedelta

import jwt
import pytest

from schoolportal.config import Settings
from schoolportal.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from schoolportal.service.tokens import ACCESS, ALGORITHM, REFRESH, TokenIssuer

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, access_token_ttl_minutes=15)


@pytest.fixture
def issuer(settings):
    return TokenIssuer(settings)


class TestIssue:
    """Tests for token issuance."""

    def test_access_token_carries_role(self, issuer):
        token = issuer.issue_access_token("user-1", "teacher")
        claims = issuer.verify(token)
        assert claims.user_id == "user-1"
        assert claims.role == "teacher"
        assert claims.token_type == ACCESS

    def test_refresh_token_has_no_role(self, issuer):
        token = issuer.issue_refresh_token("user-1")
        claims = issuer.verify(token, expected_type=REFRESH)
        assert claims.role is None
        assert claims.token_type == REFRESH

    def test_refresh_tokens_are_unique(self, issuer):
        assert issuer.issue_refresh_token("user-1") != issuer.issue_refresh_token("user-1")

    def test_pair_expiry_follows_settings(self, issuer):
        pair = issuer.issue_pair("user-1", "student")
        delta = pair.refresh_expires_at - pair.access_expires_at
        assert delta == issuer.refresh_ttl - issuer.access_ttl

    def test_unknown_role_rejected(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue_access_token("user-1", "janitor")

    def test_empty_user_id_rejected(self, issuer):
        with pytest.raises(ValidationError):
            issuer.issue_refresh_token("")

    def test_missing_secret_rejected(self):
        settings = Settings(jwt_secret=SECRET)
        settings.jwt_secret = None
        with pytest.raises(ValueError):
            TokenIssuer(settings)


class TestVerify:
    """Tests for verification failures."""

    def test_expired_token(self, issuer):
        token = issuer.issue_access_token("user-1", "student", ttl=timedelta(seconds=-5))
        with pytest.raises(TokenExpiredError):
            issuer.verify(token)

    def test_tampered_token(self, issuer):
        token = issuer.issue_access_token("user-1", "student")
        head, payload, signature = token.split(".")
        tampered = f"{head}.{payload}.{signature[:-2]}{'A' if signature[-2] != 'A' else 'B'}{signature[-1]}"
        with pytest.raises(TokenInvalidError):
            issuer.verify(tampered)

    def test_wrong_secret(self, issuer):
        forged = jwt.encode(
            {"sub": "user-1", "role": "admin", "token_type": ACCESS, "jti": "x", "exp": 9999999999},
            "another-secret-that-is-long-enough-123",
            algorithm=ALGORITHM,
        )
        with pytest.raises(TokenInvalidError):
            issuer.verify(forged)

    def test_garbage_token(self, issuer):
        with pytest.raises(TokenInvalidError):
            issuer.verify("not-a-jwt")

    def test_empty_token(self, issuer):
        with pytest.raises(TokenInvalidError):
            issuer.verify("")

    def test_refresh_token_rejected_as_access(self, issuer):
        token = issuer.issue_refresh_token("user-1")
        with pytest.raises(TokenInvalidError):
            issuer.verify(token, expected_type=ACCESS)

    def test_access_token_rejected_as_refresh(self, issuer):
        token = issuer.issue_access_token("user-1", "student")
        with pytest.raises(TokenInvalidError):
            issuer.verify(token, expected_type=REFRESH)

    def test_wrong_audience(self, settings):
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "mobile"}))
        token = other.issue_access_token("user-1", "student")
        with pytest.raises(TokenInvalidError):
            TokenIssuer(settings).verify(token)

    def test_expired_and_invalid_share_message(self, issuer):
        expired = issuer.issue_access_token("user-1", "student", ttl=timedelta(seconds=-5))
        with pytest.raises(TokenExpiredError) as expired_exc:
            issuer.verify(expired)
        with pytest.raises(TokenInvalidError) as invalid_exc:
            issuer.verify("garbage")
        assert expired_exc.value.message == invalid_exc.value.message
