#!/usr/bin/env python3
"""
Send a signed identity webhook to a locally running server.

Usage:
    # Start your server first
    uvicorn main:app --reload

    # Then run this script
    python scripts/send_identity_webhook.py --event identity.created --user-id user_local1
    python scripts/send_identity_webhook.py --event identity.updated --user-id user_local1 \
        --email new@example.com
    python scripts/send_identity_webhook.py --event identity.deleted --user-id user_local1
"""

import argparse
import json
import os
import uuid
from datetime import datetime, timezone

import httpx
from svix.webhooks import Webhook

DEFAULT_SECRET = os.getenv("IDENTITY_WEBHOOK_SECRET", "whsec_dGVzdF93ZWJob29rX3NlY3JldF9mb3JfbG9jYWw=")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")

EVENTS = ["identity.created", "identity.updated", "identity.deleted", "session.created"]


def build_user_data(user_id: str, email: str, provider: str) -> dict:
    return {
        "id": user_id,
        "email_addresses": [{"id": "idn_local", "email_address": email}],
        "primary_email_address_id": "idn_local",
        "external_accounts": [
            {"id": f"eac_{user_id}", "provider": f"oauth_{provider}", "provider_user_id": f"sub_{user_id}"}
        ],
    }


def send_webhook(event_type: str, data: dict, secret: str, base_url: str) -> None:
    """Sign an event the way Svix does and POST it."""
    url = f"{base_url}/api/webhooks/identity"
    payload = json.dumps({"type": event_type, "data": data})
    msg_id = f"msg_{uuid.uuid4().hex}"
    timestamp = datetime.now(timezone.utc)
    signature = Webhook(secret).sign(msg_id, timestamp, payload)

    headers = {
        "Content-Type": "application/json",
        "svix-id": msg_id,
        "svix-timestamp": str(int(timestamp.timestamp())),
        "svix-signature": signature,
    }

    print(f"\n{'='*60}")
    print(f"Sending webhook: {event_type}")
    print(f"URL: {url}")
    print(f"Payload: {json.dumps(json.loads(payload), indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, content=payload.encode("utf-8"), headers=headers)
        print(f"Response Status: {response.status_code}")
        print(f"Response Body: {response.text}")
    except httpx.HTTPError as e:
        print(f"Error: {e}")


def main():
    parser = argparse.ArgumentParser(description="Send a signed identity webhook")
    parser.add_argument("--event", choices=EVENTS, required=True)
    parser.add_argument("--user-id", default="user_local1")
    parser.add_argument("--email", default="local@example.com")
    parser.add_argument("--provider", choices=["google", "apple"], default="google")
    parser.add_argument("--secret", default=DEFAULT_SECRET)
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    args = parser.parse_args()

    if args.event.startswith("session."):
        data = {"id": f"sess_{uuid.uuid4().hex[:12]}", "user_id": args.user_id}
    else:
        data = build_user_data(args.user_id, args.email, args.provider)

    send_webhook(args.event, data, args.secret, args.base_url)


if __name__ == "__main__":
    main()
