"""Payload serialization, HMAC signing and outbound header construction.

The signature is computed over the exact bytes that are transmitted, so
callers serialize once with ``serialize_payload`` and send that string.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import string
import time
from collections.abc import Mapping
from typing import Any

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
ID_HEADER = "X-Webhook-Id"
EVENT_HEADER = "X-Webhook-Event"
RETRY_COUNT_HEADER = "X-Webhook-Retry-Count"

# Headers a subscription's custom headers may never replace (compared case-insensitively)
RESERVED_HEADERS: frozenset[str] = frozenset(
    name.lower()
    for name in (
        "Content-Type",
        SIGNATURE_HEADER,
        TIMESTAMP_HEADER,
        ID_HEADER,
        EVENT_HEADER,
        RETRY_COUNT_HEADER,
    )
)

SECRET_PREFIX = "whsec_"
_SECRET_ALPHABET = string.ascii_letters + string.digits


def serialize_payload(payload: Any) -> str:
    """Serialize a payload to its wire form.

    Compact separators, insertion key order, non-ASCII left unescaped.
    """
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def compute_signature(payload: str | bytes, secret: str) -> str:
    """Compute HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Serialized body (str is UTF-8 encoded first).
        secret: Shared secret for HMAC.

    Returns:
        Signature in format "sha256=<lowercase hex digest>".
    """
    body = payload.encode("utf-8") if isinstance(payload, str) else payload
    signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
    return f"sha256={signature}"


def verify_signature(payload: str | bytes, secret: str, signature: str) -> bool:
    """Verify HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Body that was signed.
        secret: Shared secret for HMAC.
        signature: Signature to verify (format: "sha256=<hex_digest>").

    Returns:
        True if signature is valid, False otherwise.
    """
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature)


def build_headers(
    *,
    signature: str,
    delivery_id: str,
    event_type: str,
    retry_count: int,
    custom_headers: Mapping[str, str] | None = None,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Build outbound request headers.

    Custom headers are applied first and any that collide with a reserved
    header name are dropped.
    """
    headers = {
        name: value
        for name, value in (custom_headers or {}).items()
        if name.lower() not in RESERVED_HEADERS
    }
    headers.update(
        {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: signature,
            TIMESTAMP_HEADER: str(timestamp if timestamp is not None else int(time.time())),
            ID_HEADER: delivery_id,
            EVENT_HEADER: event_type,
            RETRY_COUNT_HEADER: str(retry_count),
        }
    )
    return headers


def generate_webhook_secret(length: int = 32) -> str:
    """Generate a new subscription secret, e.g. ``whsec_Q3x...``."""
    return SECRET_PREFIX + "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))
