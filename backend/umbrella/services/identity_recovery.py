"""
Webhook failure recovery for identity synchronization.

When a session token verifies but no local user matches its external
provider id, the identity.created webhook was lost or has not arrived yet.
Recovery reads the user from the provider API and creates the local row on
the spot, using the same convergent insert as the webhook path, so it is
safe to run concurrently with the webhook and with other recoveries for the
same user.

Each recovery bumps a per-day counter; more than a handful per day means
the webhook channel itself is unhealthy and operators are alerted.
"""

import logging
from typing import Optional, Dict

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from umbrella.models.user import User
from umbrella.monitoring.alerts import (
    AlertManager,
    alert_identity_provider_error,
    alert_webhook_channel_degraded,
)
from umbrella.monitoring.sync_counter import ManualSyncCounter, today_utc
from umbrella.platform.errors import (
    AuthenticationFailed,
    ConfigurationError,
    IdentityConflict,
    MissingPrimaryEmail,
    UpstreamError,
)
from umbrella.repositories.identity_store import IdentityStore, UserCreate
from umbrella.services.identity_provider_client import IdentityProviderClient

logger = logging.getLogger(__name__)


def _is_provider_outage(error) -> bool:
    """Outage or misconfiguration, as opposed to a problem with one user's record."""
    if isinstance(error, MissingPrimaryEmail):
        return False
    status_code = (error.details or {}).get("status_code")
    return status_code is None or status_code >= 500 or status_code in (401, 403, 429)


class IdentityRecoveryService:
    """
    Creates missing local users from the identity provider API.

    Usage:
        recovery = IdentityRecoveryService(db, provider_client, counter, alerts)
        user = recovery.recover("user_2abc")
    """

    def __init__(
        self,
        session: Session,
        provider_client: IdentityProviderClient,
        sync_counter: ManualSyncCounter,
        alert_manager: Optional[AlertManager] = None,
        alert_threshold: int = 5,
    ):
        self.store = IdentityStore(session)
        self.provider_client = provider_client
        self.sync_counter = sync_counter
        self.alert_manager = alert_manager
        self.alert_threshold = alert_threshold

    def recover(self, external_id: str) -> User:
        """
        Return the local user for external_id, creating it from the provider.

        Raises:
            AuthenticationFailed: provider read failed, timed out, the user
                has no primary email, the provider is not configured, or its
                provider identity is linked to a different user
        """
        # A webhook may have landed since the caller looked
        existing = self.store.find_by_external_provider_id(external_id)
        if existing:
            logger.info(
                "User already exists, no recovery needed",
                extra={"external_provider_id": external_id, "user_id": existing.id},
            )
            return existing

        logger.warning(
            "User missing locally, webhook presumed lost; fetching from identity provider",
            extra={"external_provider_id": external_id},
        )

        try:
            provider_user = self.provider_client.get_user(external_id)
        except (UpstreamError, ConfigurationError) as e:
            logger.error(
                "Identity recovery failed",
                extra={
                    "external_provider_id": external_id,
                    "error_code": e.error_code,
                    "error": e.message,
                },
            )
            if _is_provider_outage(e):
                alert_identity_provider_error(e.error_code, e.message, manager=self.alert_manager)
            raise AuthenticationFailed()

        provider, subject_id = provider_user.oauth_identity()
        try:
            user, created = self.store.create_or_get(
                UserCreate(
                    external_provider_id=external_id,
                    oauth_provider=provider,
                    oauth_subject_id=subject_id,
                    email=provider_user.primary_email(),
                )
            )
        except IdentityConflict:
            logger.error(
                "Identity recovery refused, provider identity belongs to another user",
                extra={"external_provider_id": external_id, "oauth_provider": provider.value},
            )
            raise AuthenticationFailed()

        if created:
            logger.warning(
                "Recovered user from identity provider",
                extra={
                    "external_provider_id": external_id,
                    "user_id": user.id,
                    "oauth_provider": provider.value,
                },
            )
            self._record_manual_sync()
        else:
            logger.info(
                "User was created concurrently, using existing row",
                extra={"external_provider_id": external_id, "user_id": user.id},
            )

        return user

    def _record_manual_sync(self) -> None:
        """Bump today's counter and alert above the threshold. Never raises."""
        try:
            count = self.sync_counter.increment()
        except RedisError as e:
            logger.error("Failed to increment manual sync counter", extra={"error": str(e)})
            return

        if count > self.alert_threshold:
            logger.error(
                "High manual sync count, identity webhooks may be unreliable",
                extra={"manual_sync_count": count, "threshold": self.alert_threshold},
            )
            alert_webhook_channel_degraded(
                manual_sync_count=count,
                threshold=self.alert_threshold,
                date_str=today_utc().isoformat(),
                manager=self.alert_manager,
            )

    def get_manual_sync_stats(self, days: int = 7) -> Dict[str, int]:
        """Recoveries per day for the last `days` days."""
        return self.sync_counter.get_manual_sync_stats(days)
