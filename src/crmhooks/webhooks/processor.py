"""Delivery queue processor.

Each call to ``process_batch`` is one tick: claim due rows, deliver each
with a signed POST, record the attempt, and move the row to completed,
back to pending (retry) or to dead_letter. The processor owns no timer;
an external scheduler decides when ticks happen.

Concurrency safety comes from the store's atomic ``claim_due``. The
in-process ``_processing`` flag only skips overlapping ticks on the same
instance and is not what keeps two processors from delivering one row.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import httpx

from crmhooks.config import settings
from crmhooks.exceptions import (
    CRMHooksError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
)
from crmhooks.logging import log_scope
from crmhooks.models import (
    CANCELLABLE_STATUSES,
    RETRYABLE_STATUSES,
    AdminResult,
    DeliveryOutcome,
    EntityType,
    EventType,
    PayloadData,
    ProcessorResult,
    QueueStats,
    QueueStatus,
    WebhookPayload,
    generate_id,
)

from .delivery import build_attempt_record, deliver_payload

if TYPE_CHECKING:
    from crmhooks.models import DeliveryAttemptRecord, QueuedDelivery
    from crmhooks.storage import WebhookStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_MISSING_ERROR = "Webhook configuration not found"


class _ItemResult:
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    FAILED = "failed"


class WebhookQueueProcessor:
    """Drains the delivery queue one bounded batch at a time.

    Example:
        ```python
        processor = WebhookQueueProcessor(store, batch_size=25)

        # Called from cron / a scheduler / an operator endpoint
        result = await processor.process_batch()
        print(result.succeeded, result.retried, result.failed)

        stats = await processor.get_queue_stats()
        await processor.retry_delivery("que_abc123")
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        batch_size: int | None = None,
        max_concurrent: int | None = None,
        *,
        response_body_max_chars: int | None = None,
        error_message_max_chars: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            store: Queue store providing the atomic claim.
            batch_size: Rows claimed per tick. Defaults to settings.
            max_concurrent: Concurrent deliveries within a tick. Defaults to
                settings, which default to the batch size.
            response_body_max_chars: Stored response body cap.
            error_message_max_chars: Response excerpt kept in last_error.
            transport: Optional httpx transport.
        """
        self._store = store
        self._batch_size = batch_size or settings.queue_batch_size
        if max_concurrent is None:
            max_concurrent = (
                settings.queue_max_concurrency
                if settings.queue_max_concurrency is not None
                else self._batch_size
            )
        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._max_body_chars = (
            settings.response_body_max_chars
            if response_body_max_chars is None
            else response_body_max_chars
        )
        self._max_error_chars = (
            settings.error_message_max_chars
            if error_message_max_chars is None
            else error_message_max_chars
        )
        self._transport = transport
        self._processing = False

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def process_batch(self) -> ProcessorResult:
        """Run one tick.

        Returns:
            Counts of processed, succeeded, retried and terminally failed rows.
            An overlapping call on the same instance returns all zeros.
        """
        result = ProcessorResult()
        if self._processing:
            logger.debug("Queue batch already running on this processor, skipping")
            return result

        self._processing = True
        try:
            with log_scope(batch_id=generate_id("bat")):
                items = await self._store.claim_due(self._batch_size)
                if not items:
                    return result

                outcomes = await asyncio.gather(
                    *(self._process_item(item) for item in items),
                    return_exceptions=True,
                )

                for item, outcome in zip(items, outcomes, strict=True):
                    result.processed += 1
                    if isinstance(outcome, BaseException):
                        logger.error(
                            "Unexpected error processing queued delivery %s: %s", item.id, outcome
                        )
                        await self._release_claim(item, f"Processing error: {outcome}")
                        result.failed += 1
                    elif outcome == _ItemResult.SUCCEEDED:
                        result.succeeded += 1
                    elif outcome == _ItemResult.RETRIED:
                        result.retried += 1
                    else:
                        result.failed += 1

                logger.info(
                    "Processed webhook batch: %d processed, %d succeeded, %d retried, %d failed",
                    result.processed,
                    result.succeeded,
                    result.retried,
                    result.failed,
                )
        finally:
            self._processing = False

        return result

    async def _process_item(self, item: QueuedDelivery) -> str:
        """Deliver one claimed row and drive it to its next state."""
        with log_scope(
            queue_id=item.id, tenant_id=item.tenant_id, subscription_id=item.subscription_id
        ):
            subscription = await self._store.get_subscription(item.subscription_id)
            if subscription is None:
                # Permanent failure; no HTTP attempt is made or counted
                await self._store.dead_letter(
                    item.id, SUBSCRIPTION_MISSING_ERROR, attempted=False
                )
                logger.warning(
                    "Dead-lettered %s: subscription %s no longer exists",
                    item.id,
                    item.subscription_id,
                )
                return _ItemResult.FAILED

            async with self._semaphore:
                outcome = await deliver_payload(
                    subscription,
                    item.payload,
                    event_type=item.event_type,
                    delivery_id=item.delivery_id(),
                    retry_count=item.attempt_count,
                    transport=self._transport,
                )

            await self._record_attempt(
                build_attempt_record(
                    subscription_id=subscription.id,
                    queue_id=item.id,
                    event_type=item.event_type,
                    payload=item.payload,
                    outcome=outcome,
                    retry_count=item.attempt_count + 1,
                    max_body_chars=self._max_body_chars,
                )
            )

            try:
                return await self._apply_outcome(item, outcome)
            except StorageError as e:
                logger.error("Failed to update queued delivery %s: %s", item.id, e)
                if outcome.success:
                    error = f"Delivered but not marked completed: {e}"
                else:
                    error = outcome.error_summary(self._max_error_chars)
                return await self._release_claim(item, error)

    async def _apply_outcome(self, item: QueuedDelivery, outcome: DeliveryOutcome) -> str:
        if outcome.success and outcome.response_status is not None:
            await self._store.complete(
                item.id, outcome.response_status, self._truncate(outcome)
            )
            await self._update_subscription_health(item.subscription_id, succeeded=True)
            return _ItemResult.SUCCEEDED

        error = outcome.error_summary(self._max_error_chars)
        if item.attempts_remaining:
            await self._store.schedule_retry(
                item.id, error, outcome.response_status, self._truncate(outcome)
            )
            logger.info(
                "Webhook %s scheduled for retry (attempt %d of %d)",
                item.id,
                item.attempt_count + 1,
                item.max_attempts,
            )
            return _ItemResult.RETRIED

        await self._store.dead_letter(
            item.id, error, outcome.response_status, self._truncate(outcome)
        )
        await self._update_subscription_health(item.subscription_id, succeeded=False)
        logger.warning(
            "Webhook %s dead-lettered after %d attempts: %s",
            item.id,
            item.attempt_count + 1,
            error,
        )
        return _ItemResult.FAILED

    async def _record_attempt(self, record: DeliveryAttemptRecord) -> None:
        # A lost log entry never blocks the row transition
        try:
            await self._store.record_attempt(record)
        except StorageError as e:
            logger.error("Failed to record delivery attempt for %s: %s", record.queue_id, e)

    async def _update_subscription_health(self, subscription_id: str, *, succeeded: bool) -> None:
        try:
            if succeeded:
                await self._store.mark_subscription_success(subscription_id, datetime.now(UTC))
            else:
                await self._store.increment_failure_count(subscription_id)
        except StorageError as e:
            logger.error("Failed to update health of subscription %s: %s", subscription_id, e)

    async def _release_claim(self, item: QueuedDelivery, error: str) -> str:
        """Move a row whose transition failed out of ``processing``.

        The row is retried while attempts remain, otherwise dead-lettered.
        A successful delivery released this way may be sent again.
        """
        try:
            current = await self._store.get_delivery(item.id)
            if current is None or current.status != QueueStatus.PROCESSING:
                return _ItemResult.FAILED
            if item.attempts_remaining:
                await self._store.schedule_retry(item.id, error)
                return _ItemResult.RETRIED
            await self._store.dead_letter(item.id, error)
        except CRMHooksError as e:
            logger.error("Queued delivery %s left in processing: %s", item.id, e)
        return _ItemResult.FAILED

    def _truncate(self, outcome: DeliveryOutcome) -> str | None:
        if outcome.response_status is None:
            return None
        return outcome.response_body[: self._max_body_chars]

    # Administrative operations

    async def _require_status(
        self, queue_id: str, allowed: frozenset[QueueStatus], action: str
    ) -> QueuedDelivery:
        item = await self._store.get_delivery(queue_id)
        if item is None:
            raise NotFoundError("queued_delivery", queue_id)
        if item.status not in allowed:
            raise InvalidTransitionError(queue_id, item.status.value, action)
        return item

    async def retry_delivery(self, queue_id: str) -> AdminResult:
        """Move a failed or dead-lettered row back to pending.

        attempt_count is not reset, so the row's max_attempts ceiling
        still applies and a dead-lettered row gets exactly one more try.
        """
        try:
            await self._require_status(queue_id, RETRYABLE_STATUSES, "retry")
            if not await self._store.reset_for_retry(queue_id):
                # Lost a race with another operator or processor
                current = await self._store.get_delivery(queue_id)
                status = current.status.value if current else "deleted"
                raise InvalidTransitionError(queue_id, status, "retry")
        except CRMHooksError as e:
            return AdminResult(success=False, error=e.message, code=e.code)

        logger.info("Queued delivery %s reset to pending by operator", queue_id)
        return AdminResult(success=True)

    async def cancel_delivery(self, queue_id: str) -> AdminResult:
        """Delete a pending or failed row."""
        try:
            await self._require_status(queue_id, CANCELLABLE_STATUSES, "cancel")
            if not await self._store.delete_delivery(queue_id):
                current = await self._store.get_delivery(queue_id)
                status = current.status.value if current else "deleted"
                raise InvalidTransitionError(queue_id, status, "cancel")
        except CRMHooksError as e:
            return AdminResult(success=False, error=e.message, code=e.code)

        logger.info("Queued delivery %s cancelled by operator", queue_id)
        return AdminResult(success=True)

    async def get_queue_stats(self, tenant_id: str | None = None) -> QueueStats:
        """Count queued deliveries per status."""
        return QueueStats.from_counts(await self._store.count_by_status(tenant_id))

    async def list_delivery_attempts(
        self, subscription_id: str, limit: int = 50
    ) -> list[DeliveryAttemptRecord]:
        """Attempt log for a subscription, newest first."""
        return await self._store.list_attempts(subscription_id, limit=limit)

    async def send_test_delivery(self, subscription_id: str) -> DeliveryOutcome:
        """POST a synthetic ``account.created`` payload once.

        The attempt is recorded but subscription stats are left alone.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)

        payload = WebhookPayload(
            event=EventType.ACCOUNT_CREATED,
            data=PayloadData(
                entity_type=EntityType.ACCOUNT,
                entity_id="test-account",
                entity={
                    "id": "test-account",
                    "name": "Test Account",
                    "domain": "test.example.com",
                    "industry": "Technology",
                    "_test": True,
                },
            ),
        )
        body = payload.to_body()
        outcome = await deliver_payload(
            subscription,
            body,
            event_type=payload.event,
            delivery_id=payload.id,
            transport=self._transport,
        )
        await self._store.record_attempt(
            build_attempt_record(
                subscription_id=subscription.id,
                event_type=payload.event,
                payload=body,
                outcome=outcome,
                retry_count=1,
                max_body_chars=self._max_body_chars,
            )
        )
        return outcome

    async def purge_finished(
        self,
        queue_retention_days: int | None = None,
        log_retention_days: int | None = None,
    ) -> int:
        """Delete old terminal queue rows and attempt records."""
        now = datetime.now(UTC)
        queue_days = queue_retention_days or settings.queue_retention_days
        log_days = log_retention_days or settings.delivery_log_retention_days
        removed = await self._store.purge_finished(
            queue_before=now - timedelta(days=queue_days),
            attempts_before=now - timedelta(days=log_days),
        )
        logger.info("Purged %d finished webhook records", removed)
        return removed


async def process_webhook_queue(
    store: WebhookStore, batch_size: int | None = None
) -> ProcessorResult:
    """Convenience function to run a single processor tick."""
    processor = WebhookQueueProcessor(store, batch_size=batch_size)
    return await processor.process_batch()
