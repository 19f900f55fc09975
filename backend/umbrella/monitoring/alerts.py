"""
Operator alerts for identity sync.

Every alert is logged at a level matching its severity. When
SLACK_OPS_WEBHOOK_URL is set it is also posted to Slack from a background
worker thread, so a slow Slack never holds up the request that raised the
alert; delivery failures are logged and never reach the caller.

Repeats of the same alert (type + scope) inside the cooldown window are
suppressed, so a condition hit on every request pages once.
"""

import logging
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Optional, Dict, Any
from enum import Enum

import httpx

from umbrella.config import get_settings

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(str, Enum):
    # Webhook channel health
    WEBHOOK_CHANNEL_DEGRADED = "webhook_channel_degraded"
    WEBHOOK_VERIFICATION_FAILED = "webhook_verification_failed"

    # Provider backend API
    IDENTITY_PROVIDER_ERROR = "identity_provider_error"


_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.ERROR: logging.ERROR,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}

_SLACK_COLORS = {
    AlertSeverity.INFO: "good",
    AlertSeverity.WARNING: "warning",
    AlertSeverity.ERROR: "danger",
    AlertSeverity.CRITICAL: "danger",
}


@dataclass
class Alert:
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def dedupe_key(self) -> str:
        return f"{self.alert_type.value}:{self.metadata.get('scope', '*')}"


def build_slack_payload(alert: Alert) -> Dict[str, Any]:
    """Slack incoming-webhook message for an alert."""
    return {
        "text": f"[{alert.severity.value.upper()}] {alert.title}",
        "attachments": [
            {
                "color": _SLACK_COLORS[alert.severity],
                "text": alert.message,
                "fields": [
                    {"title": name, "value": str(value), "short": True}
                    for name, value in alert.metadata.items()
                    if name != "scope"
                ],
                "footer": alert.alert_type.value,
                "ts": int(alert.created_at.timestamp()),
            }
        ],
    }


class AlertManager:
    """
    Logs alerts and forwards them to Slack, with a per-key cooldown.

    The cooldown key is the alert type plus metadata["scope"] (for example
    the UTC date of a daily counter), so a new day alerts again.
    """

    SLACK_TIMEOUT_SECONDS = 3.0

    def __init__(
        self,
        slack_webhook_url: Optional[str] = None,
        cooldown_minutes: int = 60,
        background_delivery: bool = True,
    ):
        self.slack_webhook_url = slack_webhook_url
        self.background_delivery = background_delivery
        self._cooldown = timedelta(minutes=cooldown_minutes)
        self._last_sent: Dict[str, datetime] = {}
        self._lock = Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    def _claim(self, alert: Alert) -> bool:
        """Record the alert as sent unless it is still cooling down."""
        with self._lock:
            last = self._last_sent.get(alert.dedupe_key)
            if last is not None and alert.created_at - last < self._cooldown:
                return False
            self._last_sent[alert.dedupe_key] = alert.created_at
            return True

    def send_alert(self, alert: Alert) -> bool:
        """
        Log and deliver an alert.

        Returns:
            False when suppressed by the cooldown, True otherwise
        """
        if not self._claim(alert):
            logger.debug("Alert suppressed", extra={"dedupe_key": alert.dedupe_key})
            return False

        logger.log(
            _LOG_LEVELS[alert.severity],
            alert.message,
            extra={"alert_type": alert.alert_type.value, **alert.metadata},
        )

        if self.slack_webhook_url:
            self._dispatch(alert)
        return True

    def _dispatch(self, alert: Alert) -> Optional[Future]:
        if not self.background_delivery:
            self._post_to_slack(alert)
            return None

        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="slack-alerts"
                )
            executor = self._executor
        future = executor.submit(self._post_to_slack, alert)
        future.add_done_callback(_report_delivery_crash)
        return future

    def shutdown(self, wait: bool = True) -> None:
        """Stop the delivery thread, by default after pending posts finish."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _post_to_slack(self, alert: Alert) -> None:
        try:
            with httpx.Client(timeout=self.SLACK_TIMEOUT_SECONDS) as client:
                response = client.post(self.slack_webhook_url, json=build_slack_payload(alert))
        except httpx.HTTPError as e:
            logger.error(
                "Slack alert delivery failed",
                extra={"alert_type": alert.alert_type.value, "error": str(e)},
            )
            return

        if response.status_code != 200:
            logger.error(
                "Slack rejected alert",
                extra={"alert_type": alert.alert_type.value, "status_code": response.status_code},
            )


def _report_delivery_crash(future: Future) -> None:
    error = future.exception()
    if error is not None:
        logger.error("Slack alert delivery crashed", exc_info=error)


_alert_manager: Optional[AlertManager] = None
_alert_manager_lock = Lock()


def get_alert_manager() -> AlertManager:
    global _alert_manager

    with _alert_manager_lock:
        if _alert_manager is None:
            _alert_manager = AlertManager(
                slack_webhook_url=get_settings().slack_ops_webhook_url
            )
        return _alert_manager


def set_alert_manager(manager: Optional[AlertManager]) -> None:
    """Replace the alert manager singleton (tests)."""
    global _alert_manager

    with _alert_manager_lock:
        _alert_manager = manager


def alert_webhook_channel_degraded(
    manual_sync_count: int,
    threshold: int,
    date_str: str,
    manager: Optional[AlertManager] = None,
) -> bool:
    """Manual recoveries above the daily threshold: webhooks are being lost."""
    alert = Alert(
        alert_type=AlertType.WEBHOOK_CHANNEL_DEGRADED,
        severity=AlertSeverity.ERROR,
        title="Identity webhook channel degraded",
        message=(
            f"{manual_sync_count} users were recovered manually on {date_str} "
            f"(threshold: {threshold}). Identity webhooks may not be delivered."
        ),
        metadata={
            "scope": date_str,
            "manual_sync_count": manual_sync_count,
            "threshold": threshold,
        },
    )
    return (manager or get_alert_manager()).send_alert(alert)


def alert_webhook_verification_failed(
    svix_id: Optional[str],
    error: str,
    manager: Optional[AlertManager] = None,
) -> bool:
    """A delivery failed signature verification (wrong secret or forged request)."""
    alert = Alert(
        alert_type=AlertType.WEBHOOK_VERIFICATION_FAILED,
        severity=AlertSeverity.WARNING,
        title="Identity webhook verification failed",
        message=f"Webhook {svix_id} failed signature verification: {error}",
        metadata={"svix_id": svix_id, "error": error},
    )
    return (manager or get_alert_manager()).send_alert(alert)


def alert_identity_provider_error(
    error_code: str,
    error: str,
    manager: Optional[AlertManager] = None,
) -> bool:
    """Recovery could not read from the provider API; affected users get 401s."""
    alert = Alert(
        alert_type=AlertType.IDENTITY_PROVIDER_ERROR,
        severity=AlertSeverity.CRITICAL,
        title="Identity provider unavailable",
        message=f"Webhook failure recovery could not reach the identity provider: {error}",
        metadata={"scope": error_code, "error_code": error_code, "error": error},
    )
    return (manager or get_alert_manager()).send_alert(alert)
