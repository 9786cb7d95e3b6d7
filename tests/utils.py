"""Helpers shared by the test suite: Stripe event bodies and signatures."""
import hashlib
import hmac
import json
import time
from typing import Any, Optional
from uuid import uuid4

PLATFORM_SECRET = "whsec_test_platform_secret"
CONNECT_SECRET = "whsec_test_connect_secret"
ADMIN_SECRET = "test-admin-secret-at-least-32-characters"
CRON_SECRET = "test-cron-secret-at-least-32-characters!"


def stripe_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    account: Optional[str] = None,
    event_id: Optional[str] = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "id": event_id or f"evt_{uuid4().hex[:12]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }
    if account:
        event["account"] = account
    return event


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value (t=...,v1=HMAC_SHA256)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def signed_request(event: dict[str, Any], secret: str) -> tuple[bytes, dict[str, str]]:
    payload = json.dumps(event).encode("utf-8")
    return payload, {
        "Stripe-Signature": sign_payload(payload, secret),
        "Content-Type": "application/json",
    }
