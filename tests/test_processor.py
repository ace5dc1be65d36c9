"""Tests for the delivery queue processor."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import RecordingEndpoint

from crmhooks.exceptions import NotFoundError, StorageError
from crmhooks.models import (
    EventType,
    MutationContext,
    QueuedDelivery,
    QueueStatus,
)
from crmhooks.storage import InMemoryWebhookStore
from crmhooks.webhooks.processor import (
    SUBSCRIPTION_MISSING_ERROR,
    WebhookQueueProcessor,
    process_webhook_queue,
)
from crmhooks.webhooks.router import WebhookEventRouter
from crmhooks.webhooks.signing import serialize_payload, verify_signature


def deal_won() -> MutationContext:
    return MutationContext(
        tenant_id="tnt_1",
        entity_type="deal",
        entity_id="deal_42",
        operation="create",
        entity={"id": "deal_42", "name": "Acme", "amount": 5000},
    )


async def enqueue_one(store, subscription) -> str:
    """Save the subscription and route one mutation to it."""
    await store.save_subscription(subscription)
    result = await WebhookEventRouter(store).route_mutation(deal_won())
    assert len(result.queued_ids) == 1
    return result.queued_ids[0]


class TestProcessBatch:
    """Tests for WebhookQueueProcessor.process_batch."""

    def test_init_defaults(self, store) -> None:
        """Concurrency defaults to the batch size."""
        processor = WebhookQueueProcessor(store, batch_size=7)
        assert processor._batch_size == 7
        assert processor._max_concurrent == 7
        assert processor.is_processing is False

    @pytest.mark.asyncio
    async def test_empty_queue(self, store) -> None:
        """A tick on an empty queue does nothing."""
        result = await WebhookQueueProcessor(store).process_batch()
        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_successful_delivery(self, store, subscription) -> None:
        """A 2xx response completes the row and records the attempt."""
        queue_id = await enqueue_one(store, subscription)
        endpoint = RecordingEndpoint(200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        result = await processor.process_batch()

        assert result.processed == 1
        assert result.succeeded == 1
        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.COMPLETED
        assert row.attempt_count == 1
        assert row.last_response_status == 200

        request = endpoint.requests[0]
        assert request.headers["X-Webhook-Retry-Count"] == "0"
        assert request.headers["X-Webhook-Id"] == row.payload_id
        assert request.content == serialize_payload(row.payload).encode("utf-8")
        assert verify_signature(
            request.content, subscription.secret, request.headers["X-Webhook-Signature"]
        )

        attempts = await store.list_attempts(subscription.id)
        assert len(attempts) == 1
        assert attempts[0].queue_id == queue_id
        assert attempts[0].retry_count == 1
        assert attempts[0].success is True

        stored_sub = await store.get_subscription(subscription.id)
        assert stored_sub.last_triggered_at is not None
        assert stored_sub.failure_count == 0

    @pytest.mark.asyncio
    async def test_second_tick_is_idempotent(self, store, subscription) -> None:
        """Completed rows are never delivered again."""
        await enqueue_one(store, subscription)
        endpoint = RecordingEndpoint(200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        await processor.process_batch()
        second = await processor.process_batch()

        assert second.processed == 0
        assert endpoint.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_dead_letters(self, store, clock, make_subscription) -> None:
        """max_retries=2 gives three attempts, then dead_letter."""
        sub = make_subscription(max_retries=2, retry_delay_seconds=60)
        queue_id = await enqueue_one(store, sub)
        endpoint = RecordingEndpoint(httpx.Response(500, text="upstream exploded"))
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        first = await processor.process_batch()
        assert first.retried == 1
        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.PENDING
        assert row.attempt_count == 1
        assert row.last_error == "HTTP 500: upstream exploded"

        # Not due yet
        assert (await processor.process_batch()).processed == 0

        clock.advance(60)
        second = await processor.process_batch()
        assert second.retried == 1
        assert (await store.get_delivery(queue_id)).attempt_count == 2

        clock.advance(120)
        third = await processor.process_batch()
        assert third.failed == 1

        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.DEAD_LETTER
        assert row.attempt_count == 3
        assert endpoint.call_count == 3
        assert [r.headers["X-Webhook-Retry-Count"] for r in endpoint.requests] == ["0", "1", "2"]
        assert len({r.headers["X-Webhook-Id"] for r in endpoint.requests}) == 1
        assert (await store.get_subscription(sub.id)).failure_count == 1

        clock.advance(10_000)
        assert (await processor.process_batch()).processed == 0

    @pytest.mark.asyncio
    async def test_zero_retries_dead_letters_immediately(self, store, make_subscription) -> None:
        """A subscription without retries gets exactly one attempt."""
        sub = make_subscription(max_retries=0)
        queue_id = await enqueue_one(store, sub)
        endpoint = RecordingEndpoint(503)

        result = await WebhookQueueProcessor(store, transport=endpoint.transport).process_batch()

        assert result.failed == 1
        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.DEAD_LETTER
        assert row.attempt_count == 1

    @pytest.mark.asyncio
    async def test_error_excerpt_truncated(self, store, subscription) -> None:
        """last_error keeps a bounded excerpt of the response body."""
        queue_id = await enqueue_one(store, subscription)
        endpoint = RecordingEndpoint(httpx.Response(500, text="e" * 2000))
        processor = WebhookQueueProcessor(
            store,
            transport=endpoint.transport,
            error_message_max_chars=500,
            response_body_max_chars=1000,
        )

        await processor.process_batch()

        row = await store.get_delivery(queue_id)
        assert row.last_error == "HTTP 500: " + "e" * 500
        assert len(row.last_response_body) == 1000
        attempts = await store.list_attempts(subscription.id)
        assert len(attempts[0].response_body) == 1000

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, store, subscription) -> None:
        """Timeouts count as failed attempts with no response status."""
        queue_id = await enqueue_one(store, subscription)
        endpoint = RecordingEndpoint(httpx.ReadTimeout("timed out"))

        result = await WebhookQueueProcessor(store, transport=endpoint.transport).process_batch()

        assert result.retried == 1
        row = await store.get_delivery(queue_id)
        assert row.last_error == "Request timed out after 30s"
        assert row.last_response_status is None
        attempts = await store.list_attempts(subscription.id)
        assert attempts[0].response_status is None
        assert attempts[0].success is False

    @pytest.mark.asyncio
    async def test_missing_subscription_dead_letters(self, store) -> None:
        """Rows for deleted subscriptions are dead-lettered without an HTTP call."""
        row = QueuedDelivery(
            tenant_id="tnt_1",
            subscription_id="whk_gone",
            event_type=EventType.DEAL_WON,
            payload={"id": "evt_1"},
            max_attempts=4,
        )
        await store.enqueue(row)
        endpoint = RecordingEndpoint(200)

        result = await WebhookQueueProcessor(store, transport=endpoint.transport).process_batch()

        assert result.failed == 1
        assert endpoint.call_count == 0
        stored = await store.get_delivery(row.id)
        assert stored.status == QueueStatus.DEAD_LETTER
        assert stored.attempt_count == 0
        assert stored.last_error == SUBSCRIPTION_MISSING_ERROR

    @pytest.mark.asyncio
    async def test_templated_row_keeps_delivery_id(self, store, make_subscription) -> None:
        """X-Webhook-Id is the canonical payload ID even when the template drops it."""
        sub = make_subscription(payload_template={"text": "{{data.entity.name}} won"})
        queue_id = await enqueue_one(store, sub)
        endpoint = RecordingEndpoint(200)

        await WebhookQueueProcessor(store, transport=endpoint.transport).process_batch()

        row = await store.get_delivery(queue_id)
        assert endpoint.json() == {"text": "Acme won"}
        assert endpoint.requests[0].headers["X-Webhook-Id"] == row.payload_id

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, store, subscription) -> None:
        """A tick started while one is running returns an empty result."""
        await enqueue_one(store, subscription)
        processor = WebhookQueueProcessor(store, transport=RecordingEndpoint(200).transport)
        processor._processing = True

        result = await processor.process_batch()

        assert result.processed == 0
        assert (await store.count_by_status())[QueueStatus.PENDING] == 1

    @pytest.mark.asyncio
    async def test_concurrent_processors_deliver_once(self, store, subscription) -> None:
        """Two processors sharing a store never deliver the same row twice."""
        await store.save_subscription(subscription)
        router = WebhookEventRouter(store)
        for _ in range(12):
            await router.route_mutation(deal_won())
        endpoint = RecordingEndpoint(200)
        first = WebhookQueueProcessor(store, batch_size=8, transport=endpoint.transport)
        second = WebhookQueueProcessor(store, batch_size=8, transport=endpoint.transport)

        results = await asyncio.gather(first.process_batch(), second.process_batch())

        assert sum(r.processed for r in results) == 12
        assert endpoint.call_count == 12
        assert len({r.headers["X-Webhook-Id"] for r in endpoint.requests}) == 12
        assert (await store.count_by_status())[QueueStatus.COMPLETED] == 12

    @pytest.mark.asyncio
    async def test_item_error_does_not_abort_batch(self, clock, make_subscription) -> None:
        """An unexpected error on one row is counted and siblings still finish."""

        class FlakyStore(InMemoryWebhookStore):
            async def get_subscription(self, subscription_id):
                if subscription_id == "whk_broken":
                    raise RuntimeError("corrupt row")
                return await super().get_subscription(subscription_id)

        store = FlakyStore(clock=clock)
        good = make_subscription(id="whk_good")
        broken = make_subscription(id="whk_broken")
        await store.save_subscription(good)
        await store.save_subscription(broken)
        await WebhookEventRouter(store).route_mutation(deal_won())
        endpoint = RecordingEndpoint(200)

        result = await WebhookQueueProcessor(store, transport=endpoint.transport).process_batch()

        assert result.processed == 2
        assert result.succeeded == 1
        assert result.failed == 1
        assert endpoint.call_count == 1
        counts = await store.count_by_status()
        assert counts[QueueStatus.PROCESSING] == 0
        assert counts[QueueStatus.PENDING] == 1

    @pytest.mark.asyncio
    async def test_attempt_log_outage_still_completes_row(
        self, clock, make_subscription
    ) -> None:
        """A failing attempt-log write does not keep the row claimed."""

        class NoLogStore(InMemoryWebhookStore):
            async def record_attempt(self, record):
                raise StorageError("delivery log unavailable")

        store = NoLogStore(clock=clock)
        queue_id = await enqueue_one(store, make_subscription(id="whk_test123"))
        endpoint = RecordingEndpoint(200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        result = await processor.process_batch()
        second = await processor.process_batch()

        assert result.succeeded == 1
        assert (await store.get_delivery(queue_id)).status == QueueStatus.COMPLETED
        assert second.processed == 0
        assert endpoint.call_count == 1

    @pytest.mark.asyncio
    async def test_attempt_log_outage_still_retries_failure(
        self, clock, make_subscription
    ) -> None:
        """A rejected delivery is re-queued even when its attempt cannot be logged."""

        class NoLogStore(InMemoryWebhookStore):
            async def record_attempt(self, record):
                raise StorageError("delivery log unavailable")

        store = NoLogStore(clock=clock)
        queue_id = await enqueue_one(store, make_subscription(id="whk_test123"))
        endpoint = RecordingEndpoint(500, 200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        first = await processor.process_batch()
        clock.advance(60)
        second = await processor.process_batch()

        assert first.retried == 1
        assert second.succeeded == 1
        assert (await store.get_delivery(queue_id)).status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_completion_releases_claim(self, clock, make_subscription) -> None:
        """If completing a delivered row fails, the row goes back to pending."""

        class OneBadCompleteStore(InMemoryWebhookStore):
            failures_left = 1

            async def complete(self, queue_id, response_status, response_body=None):
                if self.failures_left:
                    self.failures_left -= 1
                    raise StorageError("write conflict")
                await super().complete(queue_id, response_status, response_body)

        store = OneBadCompleteStore(clock=clock)
        queue_id = await enqueue_one(store, make_subscription(id="whk_test123"))
        endpoint = RecordingEndpoint(200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        first = await processor.process_batch()
        row = await store.get_delivery(queue_id)
        assert first.retried == 1
        assert row.status == QueueStatus.PENDING
        assert row.attempt_count == 1
        assert row.last_error.startswith("Delivered but not marked completed")

        clock.advance(60)
        second = await processor.process_batch()

        assert second.succeeded == 1
        assert (await store.get_delivery(queue_id)).status == QueueStatus.COMPLETED
        assert endpoint.call_count == 2

    @pytest.mark.asyncio
    async def test_process_webhook_queue(self, store, subscription) -> None:
        """The convenience function runs one tick."""
        await enqueue_one(store, subscription)
        processor_result = await process_webhook_queue(store)
        assert processor_result.processed == 1


class TestAdministrativeOperations:
    """Tests for retry, cancel, stats and test deliveries."""

    @pytest.mark.asyncio
    async def test_retry_dead_letter_gets_one_more_attempt(
        self, store, make_subscription
    ) -> None:
        """A manually retried row is attempted again without resetting the count."""
        sub = make_subscription(max_retries=0)
        queue_id = await enqueue_one(store, sub)
        endpoint = RecordingEndpoint(500, 200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)
        await processor.process_batch()

        retry = await processor.retry_delivery(queue_id)

        assert retry.success is True
        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.PENDING
        assert row.attempt_count == 1

        await processor.process_batch()
        row = await store.get_delivery(queue_id)
        assert row.status == QueueStatus.COMPLETED
        assert endpoint.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_rejects_pending(self, store, subscription) -> None:
        """Only failed or dead-letter rows can be retried."""
        queue_id = await enqueue_one(store, subscription)

        result = await WebhookQueueProcessor(store).retry_delivery(queue_id)

        assert result.success is False
        assert result.code == "invalid_transition"
        assert "pending" in result.error

    @pytest.mark.asyncio
    async def test_retry_unknown(self, store) -> None:
        """Unknown rows are reported as not found."""
        result = await WebhookQueueProcessor(store).retry_delivery("que_missing")
        assert result.success is False
        assert result.code == "not_found"

    @pytest.mark.asyncio
    async def test_cancel_pending(self, store, subscription) -> None:
        """Pending rows can be cancelled and are never delivered."""
        queue_id = await enqueue_one(store, subscription)
        endpoint = RecordingEndpoint(200)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        result = await processor.cancel_delivery(queue_id)
        await processor.process_batch()

        assert result.success is True
        assert await store.get_delivery(queue_id) is None
        assert endpoint.call_count == 0

    @pytest.mark.asyncio
    async def test_cancel_rejects_completed(self, store, subscription) -> None:
        """Finished rows cannot be cancelled."""
        queue_id = await enqueue_one(store, subscription)
        processor = WebhookQueueProcessor(store, transport=RecordingEndpoint(200).transport)
        await processor.process_batch()

        result = await processor.cancel_delivery(queue_id)

        assert result.success is False
        assert result.code == "invalid_transition"
        assert (await store.get_delivery(queue_id)).status == QueueStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_queue_stats(self, store, make_subscription) -> None:
        """Stats count rows per status."""
        sub = make_subscription(max_retries=0)
        await enqueue_one(store, sub)
        await WebhookEventRouter(store).route_mutation(deal_won())
        processor = WebhookQueueProcessor(
            store, batch_size=1, transport=RecordingEndpoint(500).transport
        )
        await processor.process_batch()

        stats = await processor.get_queue_stats()

        assert stats.pending == 1
        assert stats.dead_letter == 1
        assert (await processor.get_queue_stats("tnt_other")).pending == 0

    @pytest.mark.asyncio
    async def test_send_test_delivery(self, store, subscription) -> None:
        """A test delivery posts a synthetic account.created payload once."""
        await store.save_subscription(subscription)
        endpoint = RecordingEndpoint(500)
        processor = WebhookQueueProcessor(store, transport=endpoint.transport)

        outcome = await processor.send_test_delivery(subscription.id)

        assert outcome.success is False
        assert endpoint.call_count == 1
        body = endpoint.json()
        assert body["event"] == "account.created"
        assert body["data"]["entity"]["_test"] is True
        assert endpoint.requests[0].headers["X-Webhook-Id"] == body["id"]

        attempts = await processor.list_delivery_attempts(subscription.id)
        assert len(attempts) == 1
        assert attempts[0].event_type == EventType.ACCOUNT_CREATED
        assert (await store.get_subscription(subscription.id)).failure_count == 0

    @pytest.mark.asyncio
    async def test_send_test_delivery_unknown(self, store) -> None:
        """Test deliveries to unknown subscriptions raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await WebhookQueueProcessor(store).send_test_delivery("whk_missing")

    @pytest.mark.asyncio
    async def test_purge_finished(self, store, subscription) -> None:
        """Purge removes terminal rows past the retention window."""
        await store.save_subscription(subscription)
        old = QueuedDelivery(
            tenant_id="tnt_1",
            subscription_id=subscription.id,
            event_type=EventType.DEAL_WON,
            payload={"id": "evt_old"},
            max_attempts=4,
            created_at=datetime.now(UTC) - timedelta(days=10),
        )
        await store.enqueue(old)
        fresh_id = await enqueue_one(store, subscription)
        processor = WebhookQueueProcessor(store, transport=RecordingEndpoint(200).transport)
        await processor.process_batch()

        removed = await processor.purge_finished(queue_retention_days=7, log_retention_days=30)

        assert removed == 1
        assert await store.get_delivery(old.id) is None
        assert await store.get_delivery(fresh_id) is not None
        assert len(await store.list_attempts(subscription.id)) == 2
