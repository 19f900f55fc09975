"""
Tests for the session and account endpoints.
"""

from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import text

from umbrella.auth.provider_verifier import (
    ProviderTokenVerifier,
    ProviderVerificationError,
    set_provider_verifier,
)
from umbrella.auth.session_cache import SessionCache, session_key
from umbrella.auth.token_codec import get_token_codec
from umbrella.models.user import OAuthProvider, User, UserRole
from umbrella.monitoring.sync_counter import ManualSyncCounter


@pytest.fixture
def provider_verifier():
    verifier = MagicMock(spec=ProviderTokenVerifier)
    set_provider_verifier(verifier)
    return verifier


# =============================================================================
# Sign-in
# =============================================================================

class TestSignIn:

    def test_known_user(self, client, make_user, provider_verifier, kv_store):
        user = make_user(external_provider_id="user_2abc")
        provider_verifier.verify_token.return_value = {"sub": "user_2abc", "sid": "sess_1"}

        response = client.post("/v1/auth/sign-in", headers={"Authorization": "Bearer provider.jwt"})

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == user.id
        claims = get_token_codec().verify(data["token"])
        assert claims.sub == "user_2abc"
        assert claims.uid == user.id
        assert kv_store.get(session_key(user.id)) is not None

    def test_unknown_user_is_recovered(
        self, client, provider_verifier, provider_client, provider_user_data, db_session, kv_store
    ):
        provider_verifier.verify_token.return_value = {"sub": "user_new"}
        provider_client.add_user(provider_user_data("user_new", email="new@example.com"))

        response = client.post("/v1/auth/sign-in", headers={"Authorization": "Bearer provider.jwt"})

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "new@example.com"
        assert db_session.query(User).count() == 1
        assert ManualSyncCounter(kv_store).get() == 1

    def test_rejected_provider_token(self, client, provider_verifier):
        provider_verifier.verify_token.side_effect = ProviderVerificationError(
            "Token has expired", error_code="token_expired"
        )

        response = client.post("/v1/auth/sign-in", headers={"Authorization": "Bearer provider.jwt"})

        assert response.status_code == 401

    def test_missing_token(self, client, provider_verifier):
        response = client.post("/v1/auth/sign-in")

        assert response.status_code == 401
        provider_verifier.verify_token.assert_not_called()


# =============================================================================
# Session check / refresh / logout
# =============================================================================

class TestSession:

    def test_valid_session(self, client, make_user, auth_headers):
        user = make_user(role=UserRole.ARTIST)

        response = client.get("/v1/auth/session", headers=auth_headers(user))

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["user"]["id"] == user.id
        assert data["user"]["role"] == "artist"
        assert "external_provider_id" not in data["user"]
        assert "expires_at" in data["session"]

    def test_lost_webhook_user_without_linked_account(
        self, client, provider_client, provider_user_data, db_session, kv_store
    ):
        provider_client.add_user(provider_user_data("E2", email="b@x.com", accounts=[]))
        now = int(datetime.now(timezone.utc).timestamp())
        token = get_token_codec().issue({
            "sub": "E2",
            "email": "b@x.com",
            "provider": "google",
            "provider_subject_id": "E2",
            "iat": now - 5,
            "exp": now + 3600,
        })

        response = client.get("/v1/auth/session", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json()["valid"] is True
        user = db_session.query(User).one()
        assert user.external_provider_id == "E2"
        assert user.oauth_provider == OAuthProvider.GOOGLE
        assert user.oauth_subject_id == "E2"
        assert user.email == "b@x.com"
        assert response.json()["user"]["id"] == user.id
        assert provider_client.calls == ["E2"]
        assert ManualSyncCounter(kv_store).get() == 1

    def test_invalid_session(self, client):
        response = client.get("/v1/auth/session", headers={"Authorization": "Bearer junk"})

        assert response.status_code == 401
        assert "request_id" in response.json()
        assert response.headers["X-Request-ID"] == response.json()["request_id"]

    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/session", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestRefresh:

    def test_refresh_issues_new_expiry(self, client, make_user, auth_headers, kv_store):
        user = make_user()
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        headers = auth_headers(user, now=earlier)
        old_exp = get_token_codec().verify(headers["Authorization"][7:]).exp

        response = client.post("/v1/auth/refresh", headers=headers)

        assert response.status_code == 200
        new_claims = get_token_codec().verify(response.json()["token"])
        assert new_claims.exp > old_exp
        assert new_claims.exp - new_claims.iat == 7 * 24 * 60 * 60
        assert kv_store.get(session_key(user.id)) is not None

    def test_expired_token_cannot_refresh(self, client, make_user, auth_headers):
        user = make_user()
        headers = auth_headers(user, now=datetime.now(timezone.utc) - timedelta(days=8))

        response = client.post("/v1/auth/refresh", headers=headers)

        assert response.status_code == 401


class TestLogout:

    def test_logout_drops_session_record(self, client, make_user, auth_headers, kv_store):
        user = make_user()
        headers = auth_headers(user)
        kv_store.set(session_key(user.id), "{}")

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logged out successfully"}
        assert kv_store.get(session_key(user.id)) is None

    @pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer junk"}])
    def test_logout_always_succeeds(self, client, headers):
        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_logout_succeeds_when_store_fails(self, client, make_user, auth_headers, db_session, db_engine):
        headers = auth_headers(make_user())
        db_session.close()
        with db_engine.begin() as conn:
            conn.execute(text("DROP TABLE users"))

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_logout_succeeds_when_cache_fails(self, client, make_user, auth_headers, monkeypatch):
        headers = auth_headers(make_user())
        cache = MagicMock(spec=SessionCache)
        cache.get.return_value = None
        cache.delete.side_effect = RuntimeError("cache backend misconfigured")
        monkeypatch.setattr("umbrella.api.routes.auth.get_session_cache", lambda: cache)

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        cache.delete.assert_called_once()

    def test_token_still_valid_after_logout(self, client, make_user, auth_headers):
        user = make_user()
        headers = auth_headers(user)

        client.post("/v1/auth/logout", headers=headers)
        response = client.get("/v1/auth/session", headers=headers)

        assert response.status_code == 200


# =============================================================================
# Account
# =============================================================================

class TestAccount:

    def test_me(self, client, make_user, auth_headers):
        user = make_user(email="me@example.com")

        response = client.get("/v1/account/me", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["email"] == "me@example.com"

    def test_select_role(self, client, make_user, auth_headers, db_session):
        user = make_user()

        response = client.put(
            "/v1/account/role", json={"role": "collective"}, headers=auth_headers(user)
        )

        assert response.status_code == 200
        assert response.json()["role"] == "collective"
        db_session.expire_all()
        assert db_session.get(User, user.id).role == UserRole.COLLECTIVE

    def test_select_unknown_role(self, client, make_user, auth_headers):
        user = make_user()

        response = client.put(
            "/v1/account/role", json={"role": "admin"}, headers=auth_headers(user)
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_error"
        assert response.json()["details"]["fields"] == ["role"]

    def test_onboarding_requires_role(self, client, make_user, auth_headers):
        user = make_user(role=None)

        response = client.post("/v1/account/onboarding/complete", headers=auth_headers(user))

        assert response.status_code == 400
        assert response.json()["error_code"] == "role_required"

    def test_onboarding_complete(self, client, make_user, auth_headers):
        user = make_user(role=UserRole.VENUE)

        response = client.post("/v1/account/onboarding/complete", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["onboarding_complete"] is True


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "ok"


class TestSignInConfiguration:

    def test_missing_issuer_is_500(self, client, monkeypatch):
        monkeypatch.delenv("IDENTITY_PROVIDER_ISSUER_URL", raising=False)

        response = client.post("/v1/auth/sign-in", headers={"Authorization": "Bearer provider.jwt"})

        assert response.status_code == 500
        assert response.json()["error_code"] == "configuration_error"
