"""
Identity Webhook Handler for processing identity provider events.

Handles the following event types (the provider's user.* names are accepted
as aliases of identity.*):
- identity.created: create the local User (idempotent under replay)
- identity.updated: patch email; 404 when the user is unknown
- identity.deleted: remove the User and its session record; no-op when absent
- session.created / session.ended / session.removed / session.revoked:
  acknowledged, no state change

Unknown event types are acknowledged and ignored so that new provider event
types never break delivery retries.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from umbrella.auth.session_cache import SessionCache
from umbrella.platform.errors import AppError, NotFound, ValidationError
from umbrella.repositories.identity_store import IdentityStore, UserCreate, UserUpdate
from umbrella.services.identity_provider_client import ProviderUser

logger = logging.getLogger(__name__)

EVENT_ALIASES = {
    "user.created": "identity.created",
    "user.updated": "identity.updated",
    "user.deleted": "identity.deleted",
}

SESSION_EVENTS = (
    "session.created",
    "session.ended",
    "session.removed",
    "session.revoked",
)


@dataclass
class WebhookResult:
    """Outcome of processing one event, rendered by the webhook route."""

    status_code: int
    message: str
    event_type: str
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "message": self.message,
            "event_type": self.event_type,
        }
        if self.user_id:
            body["user_id"] = self.user_id
        return body


def normalize_event_type(event_type: str) -> str:
    return EVENT_ALIASES.get(event_type, event_type)


class IdentityWebhookHandler:
    """
    Handler for identity provider webhook events.

    Routes events to handler methods. Each store operation commits on its
    own; unexpected errors roll the session back and propagate.
    """

    def __init__(self, session: Session, session_cache: Optional[SessionCache] = None):
        """
        Initialize handler with database session.

        Args:
            session: SQLAlchemy session for database operations
            session_cache: cache whose records are dropped on identity.deleted
        """
        self.session = session
        self.store = IdentityStore(session)
        self.session_cache = session_cache

    def handle_event(self, event_type: str, data: Dict[str, Any]) -> WebhookResult:
        """
        Route a webhook event to its handler.

        Args:
            event_type: Provider event type (e.g. 'identity.created')
            data: The event's `data` object

        Returns:
            WebhookResult with the HTTP status and message to send back

        Raises:
            ValidationError: event data is not a valid user object
            NotFound: identity.updated for an unknown user
            IdentityConflict: identity.created whose provider identity is
                already linked to a different external id
        """
        normalized = normalize_event_type(event_type)

        handlers: Dict[str, Callable[[Dict[str, Any]], WebhookResult]] = {
            "identity.created": self.handle_identity_created,
            "identity.updated": self.handle_identity_updated,
            "identity.deleted": self.handle_identity_deleted,
        }
        for session_event in SESSION_EVENTS:
            handlers[session_event] = self.handle_session_event

        handler = handlers.get(normalized)
        if not handler:
            logger.info("Unhandled webhook event", extra={"event_type": event_type})
            return WebhookResult(200, "Event received but not processed", event_type)

        try:
            result = handler(data)
        except AppError:
            self.session.rollback()
            raise
        except Exception as e:
            self.session.rollback()
            logger.error(
                f"Error handling {event_type}",
                extra={"error": str(e), "event_type": event_type},
                exc_info=True,
            )
            raise

        result.event_type = event_type
        return result

    def _parse_user(self, data: Dict[str, Any]) -> ProviderUser:
        try:
            return ProviderUser.model_validate(data)
        except PydanticValidationError:
            raise ValidationError("Invalid webhook event data: user id is required")

    # =========================================================================
    # Identity Event Handlers
    # =========================================================================

    def handle_identity_created(self, data: Dict[str, Any]) -> WebhookResult:
        """
        Handle identity.created.

        Replays and races with recovery both end in "already exists" for the
        same row; a duplicate row is never created.
        """
        provider_user = self._parse_user(data)
        external_id = provider_user.id

        existing = self.store.find_by_external_provider_id(external_id)
        if existing:
            logger.info(
                "User already exists, skipping creation",
                extra={"external_provider_id": external_id, "user_id": existing.id},
            )
            return WebhookResult(200, "User already exists", "identity.created", existing.id)

        provider, subject_id = provider_user.oauth_identity()
        user, created = self.store.create_or_get(
            UserCreate(
                external_provider_id=external_id,
                oauth_provider=provider,
                oauth_subject_id=subject_id,
                email=provider_user.best_email(),
            )
        )

        logger.info(
            "Processed identity.created",
            extra={
                "external_provider_id": external_id,
                "user_id": user.id,
                "created": created,
                "oauth_provider": provider.value,
            },
        )

        if created:
            return WebhookResult(201, "User created successfully", "identity.created", user.id)
        return WebhookResult(200, "User already exists", "identity.created", user.id)

    def handle_identity_updated(self, data: Dict[str, Any]) -> WebhookResult:
        """
        Handle identity.updated.

        An update for an unknown user is an error: delivery order is not
        guaranteed, and the provider retries until identity.created lands.
        """
        provider_user = self._parse_user(data)
        external_id = provider_user.id

        user = self.store.find_by_external_provider_id(external_id)
        if user is None:
            logger.warning(
                "User not found for update",
                extra={"external_provider_id": external_id},
            )
            raise NotFound("User not found", error_code="user_not_found")

        email = provider_user.best_email()
        patch = UserUpdate(email=email) if email is not None else UserUpdate()
        user = self.store.update(user.id, patch)

        logger.info(
            "Processed identity.updated",
            extra={"external_provider_id": external_id, "user_id": user.id},
        )
        return WebhookResult(200, "User updated successfully", "identity.updated", user.id)

    def handle_identity_deleted(self, data: Dict[str, Any]) -> WebhookResult:
        """Handle identity.deleted. Deleting an absent user is not an error."""
        provider_user = self._parse_user(data)
        external_id = provider_user.id

        user = self.store.find_by_external_provider_id(external_id)
        if user is None:
            logger.info(
                "User already absent, nothing to delete",
                extra={"external_provider_id": external_id},
            )
            return WebhookResult(200, "User not found, nothing to delete", "identity.deleted")

        user_id = user.id
        self.store.delete(external_id)
        if self.session_cache is not None:
            self.session_cache.delete(user_id)

        logger.info(
            "Processed identity.deleted",
            extra={"external_provider_id": external_id, "user_id": user_id},
        )
        return WebhookResult(200, "User deleted successfully", "identity.deleted", user_id)

    # =========================================================================
    # Session Event Handlers
    # =========================================================================

    def handle_session_event(self, data: Dict[str, Any]) -> WebhookResult:
        """Acknowledge session lifecycle events. Sessions are tracked locally."""
        logger.info(
            "Session event acknowledged",
            extra={
                "session_id": data.get("id"),
                "external_provider_id": data.get("user_id"),
            },
        )
        return WebhookResult(200, "Session event acknowledged", "session")
