"""
Root test configuration and fixtures.

Every test gets:
- a fresh file-backed SQLite database (file-backed so several sessions and
  threads can use it at once), bound to umbrella.database.session
- an in-memory key-value store for session records and sync counters
- a stub identity provider client (no network)
- a recording alert manager
"""

import os
import json
import base64
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from svix.webhooks import Webhook

# Set test environment before any settings are read
os.environ.setdefault("ENV", "test")
os.environ["SESSION_TOKEN_SECRET"] = "test-session-secret-that-is-at-least-32-bytes-long"
os.environ["IDENTITY_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(
    b"umbrella-test-webhook-secret-key"
).decode()
os.environ["IDENTITY_PROVIDER_SECRET_KEY"] = "sk_test_umbrella"
os.environ["MANUAL_SYNC_ALERT_THRESHOLD"] = "5"
os.environ.pop("USE_REDIS_SESSIONS", None)
os.environ.pop("SLACK_OPS_WEBHOOK_URL", None)

from umbrella.auth.provider_verifier import set_provider_verifier  # noqa: E402
from umbrella.auth.session_cache import set_session_cache  # noqa: E402
from umbrella.auth.token_codec import get_token_codec, reset_token_codec  # noqa: E402
from umbrella.config import reset_settings  # noqa: E402
from umbrella.database.session import (  # noqa: E402
    configure_engine,
    create_db_engine,
    get_session_factory,
)
from umbrella.db_base import Base  # noqa: E402
from umbrella.models.user import User, OAuthProvider  # noqa: E402
from umbrella.monitoring.alerts import AlertManager, set_alert_manager  # noqa: E402
from umbrella.platform.errors import UpstreamError, MissingPrimaryEmail  # noqa: E402
from umbrella.services.identity_provider_client import (  # noqa: E402
    IdentityProviderClient,
    ProviderUser,
    set_identity_provider_client,
)
from umbrella.storage.kv import InMemoryKeyValueStore, set_kv_store  # noqa: E402


# =============================================================================
# Test doubles
# =============================================================================

class StubProviderClient(IdentityProviderClient):
    """Provider client answering from a dict of user records."""

    def __init__(self):
        super().__init__(api_url="https://provider.test", secret_key="sk_test_umbrella")
        self.users = {}
        self.calls = []
        self.error = None

    def add_user(self, data: dict) -> None:
        self.users[data["id"]] = data

    def get_user(self, external_id: str) -> ProviderUser:
        self.calls.append(external_id)
        if self.error is not None:
            raise self.error

        data = self.users.get(external_id)
        if data is None:
            raise UpstreamError(
                "Identity provider returned 404", details={"status_code": 404}
            )

        user = ProviderUser.model_validate(data)
        if user.primary_email() is None:
            raise MissingPrimaryEmail(f"No primary email found for provider user {external_id}")
        return user


class RecordingAlertManager(AlertManager):
    """Alert manager that keeps every alert it actually sent."""

    def __init__(self):
        super().__init__(slack_webhook_url=None)
        self.sent = []

    def send_alert(self, alert) -> bool:
        sent = super().send_alert(alert)
        if sent:
            self.sent.append(alert)
        return sent


# =============================================================================
# Singletons
# =============================================================================

@pytest.fixture
def kv_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def provider_client():
    return StubProviderClient()


@pytest.fixture
def alert_manager():
    return RecordingAlertManager()


@pytest.fixture(autouse=True)
def _isolate_singletons(kv_store, provider_client, alert_manager):
    """Point every process-wide singleton at per-test instances."""
    reset_settings()
    reset_token_codec()
    set_kv_store(kv_store)
    set_session_cache(None)
    set_identity_provider_client(provider_client)
    set_alert_manager(alert_manager)
    set_provider_verifier(None)
    yield
    reset_settings()
    reset_token_codec()
    set_kv_store(None)
    set_session_cache(None)
    set_identity_provider_client(None)
    set_alert_manager(None)
    set_provider_verifier(None)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine(tmp_path):
    """Fresh SQLite database file for one test."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'umbrella_test.db'}")
    Base.metadata.create_all(bind=engine)
    configure_engine(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# Builders
# =============================================================================

@pytest.fixture
def make_user(db_session):
    """Factory inserting a User row directly."""

    def _make_user(
        external_provider_id="user_ext_1",
        oauth_provider=OAuthProvider.GOOGLE,
        oauth_subject_id=None,
        email="artist@example.com",
        role=None,
        onboarding_complete=False,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            external_provider_id=external_provider_id,
            oauth_provider=oauth_provider,
            oauth_subject_id=oauth_subject_id or f"sub_{uuid.uuid4().hex[:12]}",
            email=email,
            role=role,
            onboarding_complete=onboarding_complete,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def provider_user_data():
    """Factory for provider user payloads (webhook data and API responses)."""

    def _provider_user_data(
        external_id="user_ext_1",
        email="artist@example.com",
        accounts=None,
        primary=True,
    ) -> dict:
        if accounts is None:
            accounts = [
                {
                    "id": f"eac_{external_id}",
                    "provider": "oauth_google",
                    "provider_user_id": f"google_{external_id}",
                }
            ]
        data = {
            "id": external_id,
            "email_addresses": [{"id": "idn_1", "email_address": email}] if email else [],
            "primary_email_address_id": "idn_1" if primary else None,
            "external_accounts": accounts,
        }
        return data

    return _provider_user_data


@pytest.fixture
def auth_headers():
    """Factory for Authorization headers carrying a fresh session token."""

    def _auth_headers(user: User, **kwargs) -> dict:
        issued = get_token_codec().issue_for_user(user, **kwargs)
        return {"Authorization": f"Bearer {issued.token}"}

    return _auth_headers


@pytest.fixture
def webhook_secret():
    return os.environ["IDENTITY_WEBHOOK_SECRET"]


@pytest.fixture
def signed_webhook(webhook_secret):
    """Factory returning (body, headers) signed the way Svix signs deliveries."""

    def _signed_webhook(event_type: str, data: dict, secret: str = None, msg_id: str = None):
        payload = json.dumps({"type": event_type, "data": data})
        msg_id = msg_id or f"msg_{uuid.uuid4().hex}"
        timestamp = datetime.now(timezone.utc)
        signature = Webhook(secret or webhook_secret).sign(msg_id, timestamp, payload)
        headers = {
            "Content-Type": "application/json",
            "svix-id": msg_id,
            "svix-timestamp": str(int(timestamp.timestamp())),
            "svix-signature": signature,
        }
        return payload.encode("utf-8"), headers

    return _signed_webhook


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def client(db_engine):
    """TestClient over the full application bound to the test database."""
    from main import create_app

    with TestClient(create_app()) as test_client:
        yield test_client
