"""In-process implementation of the webhook store.

Suitable for tests, single-process deployments and local development.
All mutations happen under one asyncio.Lock, which makes ``claim_due``
atomic for every processor sharing this instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from crmhooks.config import settings
from crmhooks.exceptions import StorageError
from crmhooks.models import (
    CANCELLABLE_STATUSES,
    RETRYABLE_STATUSES,
    QueuedDelivery,
    QueueStatus,
)

from .base import WebhookStore

if TYPE_CHECKING:
    from crmhooks.models import DeliveryAttemptRecord, EventType, WebhookSubscription

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def compute_backoff(retry_delay_seconds: int, attempt_count: int, max_delay_seconds: int) -> int:
    """Exponential backoff without jitter.

    ``attempt_count`` is the count before the failed attempt is added, so the
    first retry waits ``retry_delay_seconds``, the second twice that, and so on.
    """
    return min(retry_delay_seconds * (2**attempt_count), max_delay_seconds)


class InMemoryWebhookStore(WebhookStore):
    """Dict-backed store.

    Example:
        ```python
        store = InMemoryWebhookStore()
        await store.save_subscription(subscription)
        router = WebhookEventRouter(store)
        processor = WebhookQueueProcessor(store)
        ```

    Attributes:
        enqueue_error: When set, ``enqueue`` raises it. Simulates an outage.
    """

    def __init__(
        self,
        retry_max_delay_seconds: int | None = None,
        failure_auto_disable_threshold: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize an empty store.

        Args:
            retry_max_delay_seconds: Backoff cap. Defaults to settings.
            failure_auto_disable_threshold: Deactivate subscriptions at this
                failure_count (0 = never). Defaults to settings.
            clock: Time source, overridable in tests.
        """
        self._max_delay = (
            retry_max_delay_seconds
            if retry_max_delay_seconds is not None
            else settings.retry_max_delay_seconds
        )
        self._disable_threshold = (
            failure_auto_disable_threshold
            if failure_auto_disable_threshold is not None
            else settings.failure_auto_disable_threshold
        )
        self._clock = clock or _utcnow
        self._lock = asyncio.Lock()
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._queue: dict[str, QueuedDelivery] = {}
        self._attempts: list[DeliveryAttemptRecord] = []
        self.enqueue_error: StorageError | None = None

    # Subscriptions

    async def list_subscriptions_for_event(
        self, tenant_id: str, event_type: EventType
    ) -> list[WebhookSubscription]:
        async with self._lock:
            return [
                sub.model_copy(deep=True)
                for sub in self._subscriptions.values()
                if sub.tenant_id == tenant_id and sub.subscribes_to(event_type)
            ]

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        async with self._lock:
            sub = self._subscriptions.get(subscription_id)
            return sub.model_copy(deep=True) if sub else None

    async def list_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        async with self._lock:
            owned = [
                sub.model_copy(deep=True)
                for sub in self._subscriptions.values()
                if sub.tenant_id == tenant_id
            ]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    async def save_subscription(self, subscription: WebhookSubscription) -> str:
        async with self._lock:
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.id

    async def update_subscription(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription | None:
        async with self._lock:
            sub = self._subscriptions.get(subscription_id)
            if sub is None:
                return None
            updated = sub.model_copy(update={**changes, "updated_at": self._clock()}, deep=True)
            self._subscriptions[subscription_id] = updated
            return updated.model_copy(deep=True)

    async def mark_subscription_success(self, subscription_id: str, at: datetime) -> None:
        async with self._lock:
            sub = self._subscriptions.get(subscription_id)
            if sub is None:
                return
            self._subscriptions[subscription_id] = sub.model_copy(
                update={"failure_count": 0, "last_triggered_at": at}
            )

    async def increment_failure_count(self, subscription_id: str) -> None:
        async with self._lock:
            sub = self._subscriptions.get(subscription_id)
            if sub is None:
                return
            failure_count = sub.failure_count + 1
            update: dict[str, object] = {"failure_count": failure_count}
            if self._disable_threshold and failure_count >= self._disable_threshold:
                update["is_active"] = False
                logger.warning(
                    "Subscription %s deactivated after %d consecutive failures",
                    subscription_id,
                    failure_count,
                )
            self._subscriptions[subscription_id] = sub.model_copy(update=update)

    # Queue

    async def enqueue(self, delivery: QueuedDelivery) -> str:
        if self.enqueue_error is not None:
            raise self.enqueue_error
        async with self._lock:
            self._queue[delivery.id] = delivery.model_copy(deep=True)
        return delivery.id

    async def claim_due(self, batch_size: int) -> list[QueuedDelivery]:
        async with self._lock:
            now = self._clock()
            due = sorted(
                (
                    row
                    for row in self._queue.values()
                    if row.status == QueueStatus.PENDING and row.next_attempt_at <= now
                ),
                key=lambda row: (row.priority, row.created_at),
            )[:batch_size]

            claimed: list[QueuedDelivery] = []
            for row in due:
                updated = row.model_copy(
                    update={"status": QueueStatus.PROCESSING, "last_attempt_at": now}
                )
                self._queue[row.id] = updated
                claimed.append(updated.model_copy(deep=True))
            return claimed

    async def get_delivery(self, queue_id: str) -> QueuedDelivery | None:
        async with self._lock:
            row = self._queue.get(queue_id)
            return row.model_copy(deep=True) if row else None

    async def complete(
        self,
        queue_id: str,
        response_status: int,
        response_body: str | None = None,
    ) -> None:
        async with self._lock:
            row = self._require(queue_id)
            self._queue[queue_id] = row.model_copy(
                update={
                    "status": QueueStatus.COMPLETED,
                    "attempt_count": min(row.attempt_count + 1, row.max_attempts),
                    "completed_at": self._clock(),
                    "last_response_status": response_status,
                    "last_response_body": response_body,
                }
            )

    async def schedule_retry(
        self,
        queue_id: str,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        async with self._lock:
            row = self._require(queue_id)
            if row.attempt_count + 1 >= row.max_attempts:
                # Out of attempts: the store never re-queues past the ceiling
                self._queue[queue_id] = self._dead_lettered(
                    row, error, response_status, response_body, attempted=True
                )
                return

            sub = self._subscriptions.get(row.subscription_id)
            base_delay = (
                sub.retry_delay_seconds if sub else settings.default_retry_delay_seconds
            )
            delay = compute_backoff(base_delay, row.attempt_count, self._max_delay)
            self._queue[queue_id] = row.model_copy(
                update={
                    "status": QueueStatus.PENDING,
                    "attempt_count": row.attempt_count + 1,
                    "next_attempt_at": self._clock() + timedelta(seconds=delay),
                    "last_error": error,
                    "last_response_status": response_status,
                    "last_response_body": response_body,
                }
            )

    async def dead_letter(
        self,
        queue_id: str,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
        attempted: bool = True,
    ) -> None:
        async with self._lock:
            row = self._require(queue_id)
            self._queue[queue_id] = self._dead_lettered(
                row, error, response_status, response_body, attempted=attempted
            )

    async def reset_for_retry(self, queue_id: str) -> bool:
        async with self._lock:
            row = self._queue.get(queue_id)
            if row is None or row.status not in RETRYABLE_STATUSES:
                return False
            self._queue[queue_id] = row.model_copy(
                update={
                    "status": QueueStatus.PENDING,
                    "next_attempt_at": self._clock(),
                    "last_error": None,
                }
            )
            return True

    async def delete_delivery(self, queue_id: str) -> bool:
        async with self._lock:
            row = self._queue.get(queue_id)
            if row is None or row.status not in CANCELLABLE_STATUSES:
                return False
            del self._queue[queue_id]
            return True

    async def count_by_status(self, tenant_id: str | None = None) -> dict[QueueStatus, int]:
        async with self._lock:
            counts = dict.fromkeys(QueueStatus, 0)
            for row in self._queue.values():
                if tenant_id is None or row.tenant_id == tenant_id:
                    counts[row.status] += 1
            return counts

    async def purge_finished(self, queue_before: datetime, attempts_before: datetime) -> int:
        async with self._lock:
            stale = [
                row.id
                for row in self._queue.values()
                if row.status in (QueueStatus.COMPLETED, QueueStatus.DEAD_LETTER)
                and row.created_at < queue_before
            ]
            for queue_id in stale:
                del self._queue[queue_id]

            kept = [r for r in self._attempts if r.created_at >= attempts_before]
            removed_attempts = len(self._attempts) - len(kept)
            self._attempts = kept
            return len(stale) + removed_attempts

    # Attempt log

    async def record_attempt(self, record: DeliveryAttemptRecord) -> str:
        async with self._lock:
            self._attempts.append(record)
        return record.id

    async def list_attempts(
        self, subscription_id: str, limit: int = 50
    ) -> list[DeliveryAttemptRecord]:
        async with self._lock:
            matching = [r for r in self._attempts if r.subscription_id == subscription_id]
        matching.sort(key=lambda r: r.created_at, reverse=True)
        return matching[:limit]

    # Helpers

    def _require(self, queue_id: str) -> QueuedDelivery:
        row = self._queue.get(queue_id)
        if row is None:
            raise StorageError(f"Queued delivery not found: {queue_id}")
        return row

    def _dead_lettered(
        self,
        row: QueuedDelivery,
        error: str,
        response_status: int | None,
        response_body: str | None,
        attempted: bool,
    ) -> QueuedDelivery:
        attempt_count = row.attempt_count + 1 if attempted else row.attempt_count
        return row.model_copy(
            update={
                "status": QueueStatus.DEAD_LETTER,
                "attempt_count": min(attempt_count, row.max_attempts),
                "last_error": error,
                "last_response_status": response_status,
                "last_response_body": response_body,
            }
        )
