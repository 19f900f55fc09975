"""
Runtime configuration for the identity service.

All settings come from environment variables. Secrets are never logged;
use AuthSettings.to_log_dict() when configuration must appear in logs.

Environment variables:
    SESSION_TOKEN_SECRET: HMAC key for Umbrella session tokens
    SESSION_TTL_SECONDS: Session token / session record lifetime (default 7 days)
    IDENTITY_WEBHOOK_SECRET: Svix signing secret for identity webhooks (whsec_...)
    IDENTITY_PROVIDER_API_URL: Base URL of the provider's backend API
    IDENTITY_PROVIDER_SECRET_KEY: Provider backend API key
    IDENTITY_PROVIDER_ISSUER_URL: Issuer of provider session JWTs (for sign-in)
    IDENTITY_PROVIDER_TIMEOUT_SECONDS: Upper bound for provider API calls
    MANUAL_SYNC_ALERT_THRESHOLD: Recoveries per day before ops are alerted
    USE_REDIS_SESSIONS / REDIS_URL: Key-value backend selection
    SLACK_OPS_WEBHOOK_URL: Optional Slack channel for operational alerts
"""

import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Dict, Any

SESSION_TTL_SECONDS_DEFAULT = 7 * 24 * 60 * 60
MANUAL_SYNC_ALERT_THRESHOLD_DEFAULT = 5
PROVIDER_TIMEOUT_SECONDS_DEFAULT = 5.0
PROVIDER_API_URL_DEFAULT = "https://api.clerk.com"


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AuthSettings:
    """Identity and session settings resolved from the environment."""

    session_token_secret: Optional[str]
    session_ttl_seconds: int
    webhook_secret: Optional[str]
    provider_api_url: str
    provider_secret_key: Optional[str]
    provider_issuer_url: Optional[str]
    provider_timeout_seconds: float
    manual_sync_alert_threshold: int
    use_redis_sessions: bool
    redis_url: Optional[str]
    slack_ops_webhook_url: Optional[str]

    @classmethod
    def from_env(cls) -> "AuthSettings":
        return cls(
            session_token_secret=os.getenv("SESSION_TOKEN_SECRET"),
            session_ttl_seconds=_get_int("SESSION_TTL_SECONDS", SESSION_TTL_SECONDS_DEFAULT),
            webhook_secret=os.getenv("IDENTITY_WEBHOOK_SECRET"),
            provider_api_url=os.getenv("IDENTITY_PROVIDER_API_URL", PROVIDER_API_URL_DEFAULT),
            provider_secret_key=os.getenv("IDENTITY_PROVIDER_SECRET_KEY"),
            provider_issuer_url=os.getenv("IDENTITY_PROVIDER_ISSUER_URL"),
            provider_timeout_seconds=_get_float(
                "IDENTITY_PROVIDER_TIMEOUT_SECONDS", PROVIDER_TIMEOUT_SECONDS_DEFAULT
            ),
            manual_sync_alert_threshold=_get_int(
                "MANUAL_SYNC_ALERT_THRESHOLD", MANUAL_SYNC_ALERT_THRESHOLD_DEFAULT
            ),
            use_redis_sessions=_get_bool("USE_REDIS_SESSIONS"),
            redis_url=os.getenv("REDIS_URL"),
            slack_ops_webhook_url=os.getenv("SLACK_OPS_WEBHOOK_URL"),
        )

    def to_log_dict(self) -> Dict[str, Any]:
        """Configuration status suitable for logging (no secret values)."""
        return {
            "session_token_secret": "set" if self.session_token_secret else "missing",
            "webhook_secret": "set" if self.webhook_secret else "missing",
            "provider_secret_key": "set" if self.provider_secret_key else "missing",
            "provider_issuer_url": self.provider_issuer_url or "missing",
            "provider_api_url": self.provider_api_url,
            "session_ttl_seconds": self.session_ttl_seconds,
            "manual_sync_alert_threshold": self.manual_sync_alert_threshold,
            "use_redis_sessions": self.use_redis_sessions,
        }


_settings: Optional[AuthSettings] = None
_settings_lock = Lock()


def get_settings() -> AuthSettings:
    """Get the process-wide settings, reading the environment on first use."""
    global _settings

    with _settings_lock:
        if _settings is None:
            _settings = AuthSettings.from_env()
        return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment (tests)."""
    global _settings

    with _settings_lock:
        _settings = None
