"""Single signed webhook POST.

Shared by the queue processor and the router's inline fallback. One call
is one HTTP attempt: no retries happen here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from crmhooks.models import DeliveryAttemptRecord, DeliveryOutcome

from .signing import build_headers, compute_signature, serialize_payload

if TYPE_CHECKING:
    from crmhooks.models import EventType, WebhookSubscription

logger = logging.getLogger(__name__)


async def deliver_payload(
    subscription: WebhookSubscription,
    payload: Any,
    *,
    event_type: EventType,
    delivery_id: str,
    retry_count: int = 0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DeliveryOutcome:
    """POST a payload to a subscription endpoint.

    The body is serialized once; the signature covers exactly those bytes.
    ``timeout_seconds`` bounds the whole exchange, including a response that
    trickles in slowly. Transport errors and timeouts are returned as a
    failed outcome with no response status, never raised.

    Args:
        subscription: Target subscription (URL, secret, headers, timeout).
        payload: JSON-compatible body.
        event_type: Sent as X-Webhook-Event.
        delivery_id: Sent as X-Webhook-Id.
        retry_count: Sent as X-Webhook-Retry-Count (attempts already made).
        transport: Optional httpx transport (tests, proxies).

    Returns:
        DeliveryOutcome with status, full response text and latency.
    """
    event_name = str(getattr(event_type, "value", event_type))
    content = serialize_payload(payload).encode("utf-8")
    headers = build_headers(
        signature=compute_signature(content, subscription.secret),
        delivery_id=delivery_id,
        event_type=event_name,
        retry_count=retry_count,
        custom_headers=subscription.headers,
    )
    url = str(subscription.url)

    started = time.perf_counter()
    try:
        async with httpx.AsyncClient(
            timeout=subscription.timeout_seconds, transport=transport
        ) as client:
            async with asyncio.timeout(subscription.timeout_seconds):
                response = await client.post(url, content=content, headers=headers)
    except (httpx.TimeoutException, TimeoutError):
        latency_ms = int((time.perf_counter() - started) * 1000)
        message = f"Request timed out after {subscription.timeout_seconds}s"
        logger.warning("Webhook timed out: %s to %s", event_name, url)
        return DeliveryOutcome(
            success=False, response_body=message, latency_ms=latency_ms, error=message
        )
    except httpx.HTTPError as e:
        latency_ms = int((time.perf_counter() - started) * 1000)
        message = str(e) or e.__class__.__name__
        logger.warning("Webhook request error: %s to %s (%s)", event_name, url, message)
        return DeliveryOutcome(
            success=False, response_body=message, latency_ms=latency_ms, error=message
        )

    latency_ms = int((time.perf_counter() - started) * 1000)
    success = 200 <= response.status_code < 300
    if success:
        logger.info(
            "Webhook delivered: %s to %s (status %d, %d ms)",
            event_name,
            url,
            response.status_code,
            latency_ms,
        )
    else:
        logger.warning(
            "Webhook rejected: %s to %s (status %d)", event_name, url, response.status_code
        )

    return DeliveryOutcome(
        success=success,
        response_status=response.status_code,
        response_body=response.text or "",
        latency_ms=latency_ms,
    )


def build_attempt_record(
    *,
    subscription_id: str,
    event_type: EventType,
    payload: Any,
    outcome: DeliveryOutcome,
    retry_count: int,
    max_body_chars: int,
    queue_id: str | None = None,
) -> DeliveryAttemptRecord:
    """Turn an outcome into an attempt-log entry with a truncated body."""
    return DeliveryAttemptRecord(
        subscription_id=subscription_id,
        queue_id=queue_id,
        event_type=event_type,
        payload=payload,
        success=outcome.success,
        response_status=outcome.response_status,
        response_body=outcome.response_body[:max_body_chars],
        latency_ms=outcome.latency_ms,
        retry_count=retry_count,
    )
