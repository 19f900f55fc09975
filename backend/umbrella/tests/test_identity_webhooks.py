"""
Tests for identity webhook handling.

Tests cover:
- Signature verification and delivery header checks on the route
- identity.created / updated / deleted handling (and user.* aliases)
- Replay idempotency
- Session and unknown events
"""

import json
import base64
from datetime import datetime, timezone, timedelta

import pytest
from svix.webhooks import Webhook

from umbrella.api.routes.webhooks_identity import verify_identity_webhook
from umbrella.auth.session_cache import SessionCache, session_key
from umbrella.models.user import User, UserRole, OAuthProvider
from umbrella.monitoring.alerts import AlertType
from umbrella.platform.errors import IdentityConflict, NotFound, ValidationError
from umbrella.services.identity_webhook_handler import IdentityWebhookHandler, normalize_event_type


WEBHOOK_URL = "/api/webhooks/identity"


@pytest.fixture
def handler(db_session):
    return IdentityWebhookHandler(db_session)


# =============================================================================
# Handler
# =============================================================================

class TestIdentityCreated:

    def test_creates_user(self, handler, db_session, provider_user_data):
        result = handler.handle_event("identity.created", provider_user_data("user_2abc"))

        assert result.status_code == 201
        assert result.message == "User created successfully"
        user = db_session.query(User).filter(User.external_provider_id == "user_2abc").one()
        assert user.email == "artist@example.com"
        assert user.oauth_provider == OAuthProvider.GOOGLE
        assert user.oauth_subject_id == "google_user_2abc"
        assert user.role is None
        assert user.onboarding_complete is False
        assert result.user_id == user.id

    def test_replay_returns_existing_row(self, handler, db_session, provider_user_data):
        first = handler.handle_event("identity.created", provider_user_data("user_2abc"))
        replay = handler.handle_event("identity.created", provider_user_data("user_2abc"))

        assert replay.status_code == 200
        assert replay.message == "User already exists"
        assert replay.user_id == first.user_id
        assert db_session.query(User).count() == 1

    def test_links_existing_unlinked_row(self, handler, make_user, provider_user_data):
        unlinked = make_user(
            external_provider_id=None,
            oauth_provider=OAuthProvider.GOOGLE,
            oauth_subject_id="google_user_2abc",
        )

        result = handler.handle_event("identity.created", provider_user_data("user_2abc"))

        assert result.status_code == 200
        assert result.user_id == unlinked.id
        assert handler.store.find_by_internal_id(unlinked.id).external_provider_id == "user_2abc"

    def test_identity_linked_to_another_user_is_a_conflict(
        self, handler, make_user, provider_user_data, db_session
    ):
        owner = make_user(external_provider_id="user_owner", oauth_subject_id="google_shared")
        data = provider_user_data(
            "user_other",
            accounts=[{"id": "eac_1", "provider": "oauth_google", "provider_user_id": "google_shared"}],
        )

        with pytest.raises(IdentityConflict):
            handler.handle_event("identity.created", data)

        db_session.refresh(owner)
        assert owner.external_provider_id == "user_owner"
        assert db_session.query(User).count() == 1

    def test_apple_only_user(self, handler, db_session, provider_user_data):
        data = provider_user_data(
            "user_apple",
            accounts=[{"id": "eac_1", "provider": "oauth_apple", "provider_user_id": "001.apple"}],
        )

        handler.handle_event("identity.created", data)

        user = db_session.query(User).one()
        assert user.oauth_provider == OAuthProvider.APPLE
        assert user.oauth_subject_id == "001.apple"

    def test_user_without_linked_account(self, handler, db_session, provider_user_data):
        handler.handle_event("identity.created", provider_user_data("user_plain", accounts=[]))

        user = db_session.query(User).one()
        assert user.oauth_provider == OAuthProvider.GOOGLE
        assert user.oauth_subject_id == "user_plain"

    def test_user_alias(self, handler, db_session, provider_user_data):
        result = handler.handle_event("user.created", provider_user_data("user_alias"))

        assert result.status_code == 201
        assert result.event_type == "user.created"
        assert db_session.query(User).count() == 1

    def test_missing_id_is_validation_error(self, handler):
        with pytest.raises(ValidationError):
            handler.handle_event("identity.created", {"email_addresses": []})


class TestIdentityUpdated:

    def test_updates_email(self, handler, make_user, provider_user_data):
        user = make_user(external_provider_id="user_2abc", email="old@example.com")

        result = handler.handle_event(
            "identity.updated", provider_user_data("user_2abc", email="new@example.com")
        )

        assert result.status_code == 200
        assert handler.store.find_by_internal_id(user.id).email == "new@example.com"

    def test_unknown_user_is_not_found(self, handler, provider_user_data):
        with pytest.raises(NotFound) as exc_info:
            handler.handle_event("identity.updated", provider_user_data("user_unknown"))

        assert exc_info.value.error_code == "user_not_found"

    def test_role_untouched(self, handler, make_user, provider_user_data):
        user = make_user(external_provider_id="user_2abc", role=UserRole.VENUE)

        handler.handle_event("identity.updated", provider_user_data("user_2abc"))

        assert handler.store.find_by_internal_id(user.id).role == UserRole.VENUE


class TestIdentityDeleted:

    def test_deletes_user_and_session_record(self, db_session, make_user, kv_store):
        user = make_user(external_provider_id="user_2abc")
        cache = SessionCache(kv_store, ttl_seconds=60)
        cache.put(user)
        handler = IdentityWebhookHandler(db_session, session_cache=cache)

        result = handler.handle_event("identity.deleted", {"id": "user_2abc", "deleted": True})

        assert result.status_code == 200
        assert result.message == "User deleted successfully"
        assert db_session.query(User).count() == 0
        assert kv_store.get(session_key(user.id)) is None

    def test_absent_user_is_not_an_error(self, handler):
        result = handler.handle_event("identity.deleted", {"id": "user_gone", "deleted": True})

        assert result.status_code == 200
        assert result.message == "User not found, nothing to delete"


class TestOtherEvents:

    @pytest.mark.parametrize("event_type", [
        "session.created", "session.ended", "session.removed", "session.revoked",
    ])
    def test_session_events_acknowledged(self, handler, db_session, event_type):
        result = handler.handle_event(event_type, {"id": "sess_1", "user_id": "user_2abc"})

        assert result.status_code == 200
        assert result.message == "Session event acknowledged"
        assert db_session.query(User).count() == 0

    def test_unknown_event_acknowledged(self, handler):
        result = handler.handle_event("organization.created", {"id": "org_1"})

        assert result.status_code == 200
        assert result.message == "Event received but not processed"

    def test_normalize_event_type(self):
        assert normalize_event_type("user.deleted") == "identity.deleted"
        assert normalize_event_type("identity.deleted") == "identity.deleted"
        assert normalize_event_type("session.created") == "session.created"


# =============================================================================
# Route
# =============================================================================

class TestWebhookRoute:

    def test_scenario_created_then_replayed(self, client, signed_webhook, provider_user_data, db_session):
        body, headers = signed_webhook("identity.created", provider_user_data("user_2abc"))

        first = client.post(WEBHOOK_URL, content=body, headers=headers)
        assert first.status_code == 201
        assert first.json()["success"] is True
        assert first.json()["message"] == "User created successfully"

        # Replayed delivery, same svix-id and signature
        replay = client.post(WEBHOOK_URL, content=body, headers=headers)
        assert replay.status_code == 200
        assert replay.json()["message"] == "User already exists"
        assert db_session.query(User).count() == 1

    def test_scenario_delete_absent_then_create(self, client, signed_webhook, provider_user_data, db_session):
        body, headers = signed_webhook("identity.deleted", {"id": "user_late", "deleted": True})
        deleted = client.post(WEBHOOK_URL, content=body, headers=headers)
        assert deleted.status_code == 200

        body, headers = signed_webhook("identity.created", provider_user_data("user_late"))
        created = client.post(WEBHOOK_URL, content=body, headers=headers)
        assert created.status_code == 201
        assert db_session.query(User).count() == 1

    def test_update_unknown_user_is_404(self, client, signed_webhook, provider_user_data):
        body, headers = signed_webhook("identity.updated", provider_user_data("user_unknown"))

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "user_not_found"

    @pytest.mark.parametrize("missing", ["svix-id", "svix-timestamp", "svix-signature"])
    def test_missing_headers(self, client, signed_webhook, provider_user_data, missing):
        body, headers = signed_webhook("identity.created", provider_user_data())
        del headers[missing]

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "missing_headers"

    def test_invalid_signature(self, client, signed_webhook, provider_user_data, alert_manager, db_session):
        other_secret = "whsec_" + base64.b64encode(b"some-other-signing-secret").decode()
        body, headers = signed_webhook("identity.created", provider_user_data(), secret=other_secret)

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_signature"
        assert db_session.query(User).count() == 0
        assert alert_manager.sent[0].alert_type == AlertType.WEBHOOK_VERIFICATION_FAILED

    def test_tampered_body(self, client, signed_webhook, provider_user_data):
        body, headers = signed_webhook("identity.created", provider_user_data("user_a"))
        tampered = body.replace(b"user_a", b"user_b")

        response = client.post(WEBHOOK_URL, content=tampered, headers=headers)

        assert response.status_code == 400

    def test_stale_timestamp(self, client, webhook_secret, provider_user_data):
        payload = json.dumps({"type": "identity.created", "data": provider_user_data()})
        old = datetime.now(timezone.utc) - timedelta(minutes=10)
        headers = {
            "svix-id": "msg_old",
            "svix-timestamp": str(int(old.timestamp())),
            "svix-signature": Webhook(webhook_secret).sign("msg_old", old, payload),
        }

        response = client.post(WEBHOOK_URL, content=payload.encode(), headers=headers)

        assert response.status_code == 400

    def test_missing_secret_is_500(self, client, signed_webhook, provider_user_data, monkeypatch):
        from umbrella.config import reset_settings

        body, headers = signed_webhook("identity.created", provider_user_data())
        monkeypatch.delenv("IDENTITY_WEBHOOK_SECRET")
        reset_settings()

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 500
        assert response.json()["error_code"] == "configuration_error"

    def test_missing_event_type(self, client, webhook_secret):
        payload = json.dumps({"data": {"id": "user_1"}})
        now = datetime.now(timezone.utc)
        headers = {
            "svix-id": "msg_1",
            "svix-timestamp": str(int(now.timestamp())),
            "svix-signature": Webhook(webhook_secret).sign("msg_1", now, payload),
        }

        response = client.post(WEBHOOK_URL, content=payload.encode(), headers=headers)

        assert response.status_code == 400

    def test_signed_non_json_body(self, client, webhook_secret):
        payload = "not json"
        now = datetime.now(timezone.utc)
        headers = {
            "svix-id": "msg_2",
            "svix-timestamp": str(int(now.timestamp())),
            "svix-signature": Webhook(webhook_secret).sign("msg_2", now, payload),
        }

        response = client.post(WEBHOOK_URL, content=payload.encode(), headers=headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "invalid_payload"

    def test_verify_returns_decoded_event(self, signed_webhook, webhook_secret, provider_user_data):
        body, headers = signed_webhook("identity.created", provider_user_data("user_2abc"))

        event = verify_identity_webhook(
            payload=body,
            svix_id=headers["svix-id"],
            svix_timestamp=headers["svix-timestamp"],
            svix_signature=headers["svix-signature"],
            webhook_secret=webhook_secret,
        )

        assert event["type"] == "identity.created"
        assert event["data"]["id"] == "user_2abc"

    def test_session_event_via_route(self, client, signed_webhook):
        body, headers = signed_webhook("session.created", {"id": "sess_1", "user_id": "user_1"})

        response = client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["event_type"] == "session.created"

    def test_health_reports_manual_syncs(self, client):
        response = client.get(f"{WEBHOOK_URL}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["webhook_secret_configured"] is True
        assert len(data["manual_syncs"]) == 7
