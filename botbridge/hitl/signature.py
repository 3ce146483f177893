"""HubSpot v3 webhook signature validation."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from botbridge.exceptions import IntegrationError
from botbridge.services.datetime_service import now_millis

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-HubSpot-Signature-V3"
TIMESTAMP_HEADER = "X-HubSpot-Request-Timestamp"
MAX_AGE_MS = 5 * 60 * 1000


class WebhookSignatureError(IntegrationError):
    """Raised when an inbound webhook cannot be authenticated."""


def compute_signature(client_secret: str, method: str, url: str, body: str, timestamp: str) -> str:
    digest = hmac.new(
        client_secret.encode(),
        f"{method}{url}{body}{timestamp}".encode(),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode()


def verify_signature(
    client_secret: str,
    *,
    method: str,
    url: str,
    body: str,
    signature: str | None,
    timestamp: str | None,
    now_ms: int | None = None,
) -> None:
    """Raise WebhookSignatureError unless the request was signed by HubSpot.

    The timestamp must be at most five minutes old.
    """
    if not signature or not timestamp:
        msg = "Missing HubSpot signature headers"
        raise WebhookSignatureError(msg)
    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        msg = f"Invalid HubSpot request timestamp: {timestamp!r}"
        raise WebhookSignatureError(msg) from exc

    current = now_ms if now_ms is not None else now_millis()
    if current - sent_at > MAX_AGE_MS:
        msg = "HubSpot request timestamp is too old"
        raise WebhookSignatureError(msg)

    expected = compute_signature(client_secret, method, url, body, timestamp)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        logger.warning("Rejected webhook with invalid HubSpot signature")
        msg = "Invalid HubSpot signature"
        raise WebhookSignatureError(msg)
