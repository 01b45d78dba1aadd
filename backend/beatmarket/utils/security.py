"""
Security utilities for BeatMarket.

Verification of payment provider webhooks signed with the Stripe scheme:

    Stripe-Signature: t=1700000000,v1=5257a869e7ec...,v1=...

The signed payload is ``"{t}.{raw_body}"`` and each ``v1`` value is the hex
HMAC-SHA256 of it under the endpoint's webhook secret. A signature is accepted
when any ``v1`` value matches and ``t`` is within the tolerance window.
"""

import hashlib
import hmac
import json
import logging
import time

from typing import Any

from beatmarket.core.errors import ValidationError


logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"


class WebhookSignatureError(ValidationError):
    """Raised when a webhook payload cannot be authenticated."""


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    """Return the hex HMAC-SHA256 of ``"{timestamp}.{payload}"``."""
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """
    Build a signature header for ``payload``.

    Used to sign fixtures and local replays of provider events.
    """
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},{SIGNATURE_SCHEME}={compute_signature(payload, timestamp, secret)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []

    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as error:
                raise WebhookSignatureError("Malformed signature timestamp") from error
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    return timestamp, signatures


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> dict[str, Any]:
    """
    Authenticate a webhook body and return the decoded event.

    Args:
        payload: Raw request body exactly as received.
        signature_header: Value of the ``Stripe-Signature`` header.
        secret: Webhook endpoint secret.
        tolerance_seconds: Maximum age of the signed timestamp.
        now: Current epoch seconds, defaults to ``time.time()``.

    Returns:
        dict: The parsed JSON event.

    Raises:
        WebhookSignatureError: On a missing, malformed, stale or mismatching
            signature, or an undecodable body.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")

    timestamp, signatures = _parse_signature_header(signature_header)

    current_time = time.time() if now is None else now
    if abs(current_time - timestamp) > tolerance_seconds:
        logger.warning("Webhook signature timestamp outside tolerance: %s", timestamp)
        raise WebhookSignatureError("Signature timestamp outside the tolerance window")

    expected = compute_signature(payload, timestamp, secret).encode("ascii")
    # Header values are arbitrary text; compare_digest only takes ASCII str
    candidates = [value.encode("utf-8", "surrogateescape") for value in signatures]
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        logger.warning("Webhook signature mismatch")
        raise WebhookSignatureError("Invalid webhook signature")

    try:
        event = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise WebhookSignatureError("Webhook payload is not valid JSON") from error

    if not isinstance(event, dict):
        raise WebhookSignatureError("Webhook payload is not an event object")
    return event
