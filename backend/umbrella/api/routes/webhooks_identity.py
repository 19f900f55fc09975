"""
Identity provider webhooks for user synchronization.

SECURITY: All webhooks MUST verify the Svix signature before processing.
The identity provider delivers webhooks through Svix; the signature covers
"{svix-id}.{svix-timestamp}.{body}" and timestamps older than five minutes
are rejected.

Supported Events:
- identity.created, identity.updated, identity.deleted (user.* aliases)
- session.created, session.ended, session.removed, session.revoked

Response codes:
- 200: processed, or an idempotent no-op
- 201: user created
- 400: missing/invalid headers, signature or body
- 404: update for an unknown user (provider retries)
- 409: the provider identity is already linked to a different user
- 500: IDENTITY_WEBHOOK_SECRET not configured
"""

import json
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from svix.webhooks import Webhook, WebhookVerificationError

from umbrella.auth.session_cache import get_session_cache
from umbrella.config import get_settings
from umbrella.database.session import get_db_session
from umbrella.monitoring.alerts import alert_webhook_verification_failed
from umbrella.monitoring.sync_counter import ManualSyncCounter
from umbrella.platform.errors import ConfigurationError, ValidationError
from umbrella.services.identity_webhook_handler import IdentityWebhookHandler
from umbrella.storage.kv import get_kv_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def verify_identity_webhook(
    payload: bytes,
    svix_id: str,
    svix_timestamp: str,
    svix_signature: str,
    webhook_secret: str,
) -> Dict[str, Any]:
    """
    Verify the Svix signature, then decode the body.

    Webhook.verify is only trusted to check the signature; its return value
    differs across svix releases, so the body is parsed here.

    Raises:
        ValidationError: signature invalid, timestamp stale, or body not JSON
    """
    try:
        wh = Webhook(webhook_secret)
        wh.verify(
            payload,
            {
                "svix-id": svix_id,
                "svix-timestamp": svix_timestamp,
                "svix-signature": svix_signature,
            }
        )
    except WebhookVerificationError as e:
        logger.warning(
            "Identity webhook signature verification failed",
            extra={"svix_id": svix_id, "error": str(e)},
        )
        raise ValidationError("Invalid webhook signature", error_code="invalid_signature")

    try:
        return json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(
            "Invalid JSON in identity webhook payload",
            extra={"svix_id": svix_id, "error": str(e)},
        )
        raise ValidationError("Invalid JSON payload", error_code="invalid_payload")


def parse_event(event: Any) -> Dict[str, Any]:
    """Check the event envelope is {type: str, data: object}."""
    if not isinstance(event, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    event_type = event.get("type")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Missing event type")

    data = event.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Missing event data")

    return event


@router.post("/identity", status_code=200)
async def handle_identity_webhook(
    request: Request,
    svix_id: Optional[str] = Header(None, alias="svix-id"),
    svix_timestamp: Optional[str] = Header(None, alias="svix-timestamp"),
    svix_signature: Optional[str] = Header(None, alias="svix-signature"),
    db: Session = Depends(get_db_session),
):
    """
    Handle incoming identity provider webhooks.

    Security:
    - Verifies Svix signature using IDENTITY_WEBHOOK_SECRET
    - Does not require session authentication (webhooks are server-to-server)
    """
    webhook_secret = get_settings().webhook_secret
    if not webhook_secret:
        logger.error("IDENTITY_WEBHOOK_SECRET not configured")
        raise ConfigurationError("Webhook secret not configured")

    if not svix_id or not svix_timestamp or not svix_signature:
        logger.warning(
            "Identity webhook missing delivery headers",
            extra={
                "has_id": bool(svix_id),
                "has_timestamp": bool(svix_timestamp),
                "has_signature": bool(svix_signature),
            }
        )
        raise ValidationError("Missing webhook headers", error_code="missing_headers")

    body = await request.body()

    try:
        event = verify_identity_webhook(
            payload=body,
            svix_id=svix_id,
            svix_timestamp=svix_timestamp,
            svix_signature=svix_signature,
            webhook_secret=webhook_secret,
        )
    except ValidationError as e:
        if e.error_code == "invalid_signature":
            await run_in_threadpool(alert_webhook_verification_failed, svix_id, e.message)
        raise

    event = parse_event(event)
    event_type = event["type"]

    logger.info(
        "Received identity webhook",
        extra={"event_type": event_type, "svix_id": svix_id},
    )

    handler = IdentityWebhookHandler(db, session_cache=get_session_cache())
    result = await run_in_threadpool(handler.handle_event, event_type, event["data"])

    logger.info(
        "Processed identity webhook",
        extra={
            "event_type": event_type,
            "svix_id": svix_id,
            "status_code": result.status_code,
            "user_id": result.user_id,
        }
    )

    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.get("/identity/health")
def identity_webhook_health():
    """
    Health check for the identity webhook endpoint.

    Reports whether the signing secret is configured and how many users had
    to be recovered manually per day (a rising count means lost webhooks).
    Does not require authentication.
    """
    stats = ManualSyncCounter(get_kv_store()).get_manual_sync_stats(days=7)
    return {
        "status": "healthy",
        "webhook_secret_configured": bool(get_settings().webhook_secret),
        "manual_syncs": stats,
    }
