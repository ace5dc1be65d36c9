"""Queue store contract consumed by the router and the processor.

The store owns persistence, the atomic claim and the retry backoff
schedule. Implementations raise StorageError when they are unavailable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from crmhooks.models import (
        DeliveryAttemptRecord,
        EventType,
        QueuedDelivery,
        QueueStatus,
        WebhookSubscription,
    )


class WebhookStore(ABC):
    """Abstract port for subscription, queue and attempt-log persistence.

    The only hard cross-process guarantee the pipeline relies on is
    ``claim_due``: a row handed to one caller must never be handed to
    another until it has been re-queued by ``schedule_retry`` or reset by
    ``reset_for_retry``.
    """

    # Subscriptions

    @abstractmethod
    async def list_subscriptions_for_event(
        self, tenant_id: str, event_type: EventType
    ) -> list[WebhookSubscription]:
        """Active subscriptions of a tenant that include the event type."""
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        ...

    @abstractmethod
    async def list_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """All subscriptions of a tenant, active or not, newest first."""
        ...

    @abstractmethod
    async def save_subscription(self, subscription: WebhookSubscription) -> str:
        """Insert or replace a subscription. Returns its ID."""
        ...

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription | None:
        """Atomically apply field changes to a stored subscription.

        ``changes`` holds already validated values. updated_at is stamped by
        the store. Returns the updated subscription, or None if it does not
        exist.
        """
        ...

    @abstractmethod
    async def mark_subscription_success(self, subscription_id: str, at: datetime) -> None:
        """Reset failure_count to 0 and stamp last_triggered_at."""
        ...

    @abstractmethod
    async def increment_failure_count(self, subscription_id: str) -> None:
        ...

    # Queue

    @abstractmethod
    async def enqueue(self, delivery: QueuedDelivery) -> str:
        """Insert a pending row. Returns its ID."""
        ...

    @abstractmethod
    async def claim_due(self, batch_size: int) -> list[QueuedDelivery]:
        """Atomically move up to batch_size due pending rows to processing.

        Due means ``status == pending`` and ``next_attempt_at <= now``.
        Rows come back ordered by priority, then age.
        """
        ...

    @abstractmethod
    async def get_delivery(self, queue_id: str) -> QueuedDelivery | None:
        ...

    @abstractmethod
    async def complete(
        self,
        queue_id: str,
        response_status: int,
        response_body: str | None = None,
    ) -> None:
        """Mark a claimed row completed."""
        ...

    @abstractmethod
    async def schedule_retry(
        self,
        queue_id: str,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> None:
        """Return a claimed row to pending after a failed attempt.

        Increments attempt_count and places next_attempt_at according to the
        store's backoff policy.
        """
        ...

    @abstractmethod
    async def dead_letter(
        self,
        queue_id: str,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
        attempted: bool = True,
    ) -> None:
        """Move a claimed row to dead_letter.

        ``attempted`` is False when no HTTP attempt was made (missing
        subscription), in which case attempt_count is left unchanged.
        """
        ...

    @abstractmethod
    async def reset_for_retry(self, queue_id: str) -> bool:
        """Conditionally move a failed/dead_letter row back to pending.

        Clears last_error and sets next_attempt_at to now; attempt_count is
        unchanged. Returns False if the row was not in a retryable status.
        """
        ...

    @abstractmethod
    async def delete_delivery(self, queue_id: str) -> bool:
        """Conditionally delete a pending/failed row. Returns False otherwise."""
        ...

    @abstractmethod
    async def count_by_status(self, tenant_id: str | None = None) -> dict[QueueStatus, int]:
        ...

    @abstractmethod
    async def purge_finished(self, queue_before: datetime, attempts_before: datetime) -> int:
        """Delete old completed/dead_letter rows and attempt records.

        Returns the number of records removed.
        """
        ...

    # Attempt log

    @abstractmethod
    async def record_attempt(self, record: DeliveryAttemptRecord) -> str:
        ...

    @abstractmethod
    async def list_attempts(
        self, subscription_id: str, limit: int = 50
    ) -> list[DeliveryAttemptRecord]:
        """Attempt records for a subscription, newest first."""
        ...
