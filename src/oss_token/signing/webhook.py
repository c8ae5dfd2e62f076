"""Signing provider webhook authentication."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..errors import Unauthorized, ValidationError

logger = logging.getLogger(__name__)

TIMESTAMP_HEADER = "x-xumm-request-timestamp"
SIGNATURE_HEADER = "x-xumm-request-signature"


@dataclass(slots=True)
class WebhookEvent:
    """Payload reference from a verified callback body; the outcome is re-read from the provider."""

    ref: str


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    key = secret.replace("-", "").encode("utf-8")
    return hmac.new(key, timestamp.encode("utf-8") + body, hashlib.sha1).hexdigest()


def verify_webhook_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    max_skew_sec: int,
    now: Optional[float] = None,
) -> None:
    """Raise :class:`Unauthorized` unless the body carries a fresh, valid HMAC."""

    timestamp = headers.get(TIMESTAMP_HEADER)
    signature = headers.get(SIGNATURE_HEADER)
    if not timestamp or not signature:
        raise Unauthorized("Missing webhook signature headers")
    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise Unauthorized("Malformed webhook timestamp") from exc

    current = time.time() if now is None else now
    if abs(current - sent_at) > max_skew_sec:
        logger.warning("webhook.stale", extra={"timestamp": sent_at})
        raise Unauthorized("Webhook timestamp outside the accepted window")

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.lower()):
        logger.warning("webhook.bad_signature")
        raise Unauthorized("Invalid webhook signature")


def parse_webhook_body(body: bytes) -> WebhookEvent:
    """Parse an already-authenticated callback body."""

    try:
        payload: Any = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be an object")

    response = payload.get("payloadResponse") or {}
    ref = response.get("payload_uuidv4") or (payload.get("meta") or {}).get("payload_uuidv4")
    if not ref:
        raise ValidationError("Webhook body has no payload reference")
    return WebhookEvent(ref=str(ref))
