"""Signature verification for Resend (Svix) webhook deliveries."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails."""


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def extract_svix_signing_key(secret: str) -> bytes:
    """Decode a ``whsec_``-prefixed secret into raw HMAC key bytes."""

    encoded = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return secret.encode("utf-8")


def compute_svix_signature(secret: str, message_id: str, timestamp: str, payload: bytes) -> str:
    signed_content = f"{message_id}.{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(extract_svix_signing_key(secret), signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_timestamp(
    timestamp: Optional[str],
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    if not timestamp:
        return False
    try:
        webhook_time = int(timestamp)
    except (TypeError, ValueError):
        logger.warning("Invalid webhook timestamp format: %s", timestamp)
        return False

    current_time = int(now if now is not None else time.time())
    age = abs(current_time - webhook_time)
    if age > max_age:
        logger.warning("Webhook timestamp outside tolerance: %ss (max: %ss)", age, max_age)
        return False
    return True


def _header(headers: Mapping[str, str], name: str) -> str:
    # Resend sends ``svix-*`` headers; the Standard Webhooks names are accepted too.
    return headers.get(f"svix-{name}") or headers.get(f"webhook-{name}") or ""


def verify_svix_webhook(
    headers: Mapping[str, str],
    payload: bytes,
    secret: str,
    *,
    max_age: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """Raise :class:`WebhookSignatureError` unless ``payload`` is signed with ``secret``."""

    message_id = _header(headers, "id")
    timestamp = _header(headers, "timestamp")
    signature_header = _header(headers, "signature")

    if not message_id or not timestamp or not signature_header:
        raise WebhookSignatureError("Missing webhook signature headers")
    if not verify_timestamp(timestamp, max_age, now):
        raise WebhookSignatureError("Webhook timestamp expired or invalid")

    expected = compute_svix_signature(secret, message_id, timestamp, payload)
    # The header may carry several space separated ``v1,<signature>`` entries.
    for entry in signature_header.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and constant_time_compare(signature, expected):
            return

    logger.warning("Webhook signature mismatch for message %s", message_id)
    raise WebhookSignatureError("Invalid webhook signature")
