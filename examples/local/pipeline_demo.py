#!/usr/bin/env python3
"""Webhook pipeline demo.

Walks one tenant's deal through the outbound webhook pipeline:

- Register two subscriptions (one plain, one with a chat-style template)
- Route a deal update and a deal.won domain event
- Run processor ticks against a local receiver that verifies signatures
- Watch a flaky endpoint retry, dead-letter and get retried by an operator

No network access required - the receiver is an in-process httpx transport.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from crmhooks.config import Settings
from crmhooks.models import EntityType, EventType, MutationContext
from crmhooks.service import WebhookService
from crmhooks.storage import InMemoryWebhookStore
from crmhooks.webhooks import verify_signature

SECRETS: dict[str, str] = {}
FLAKY_FAILURES_LEFT = 2


def receiver(request: httpx.Request) -> httpx.Response:
    """Pretend to be the tenant's endpoints."""
    global FLAKY_FAILURES_LEFT

    host = request.url.host
    signature = request.headers["X-Webhook-Signature"]
    valid = verify_signature(request.content, SECRETS[host], signature)
    print(
        f"    <- {host}: {request.headers['X-Webhook-Event']} "
        f"(retry {request.headers['X-Webhook-Retry-Count']}, signature "
        f"{'ok' if valid else 'INVALID'})"
    )

    if host == "flaky.example.com" and FLAKY_FAILURES_LEFT > 0:
        FLAKY_FAILURES_LEFT -= 1
        return httpx.Response(503, text="maintenance")
    return httpx.Response(200, text="ok")


async def main() -> None:
    print("=" * 70)
    print("crmhooks Webhook Pipeline Demo")
    print("=" * 70)

    # Store clock moved by hand so retries become due without sleeping
    now = [datetime.now(UTC) + timedelta(seconds=1)]
    store = InMemoryWebhookStore(clock=lambda: now[0])
    settings = Settings(_env_file=None, default_retry_delay_seconds=5, default_max_retries=1)
    service = WebhookService.create(
        settings, store=store, transport=httpx.MockTransport(receiver)
    )

    print("\n1. REGISTER SUBSCRIPTIONS")
    print("-" * 70)
    crm = await service.register_subscription(
        "tnt_acme",
        "https://crm-sync.example.com/hooks",
        ["deal.updated", "deal.won"],
        description="Data warehouse sync",
    )
    chat = await service.register_subscription(
        "tnt_acme",
        "https://flaky.example.com/chat",
        ["deal.won"],
        payload_template={"text": "Deal {{data.entity.name}} won for ${{data.entity.amount}}"},
    )
    SECRETS["crm-sync.example.com"] = crm.secret
    SECRETS["flaky.example.com"] = chat.secret
    print(f"  {crm.id} -> {crm.url} {[e.value for e in crm.events]}")
    print(f"  {chat.id} -> {chat.url} {[e.value for e in chat.events]}")

    print("\n2. ROUTE MUTATIONS")
    print("-" * 70)
    deal = {"id": "deal_42", "name": "Acme renewal", "stage": "won", "amount": 5000}
    updated = await service.router.route_mutation(
        MutationContext(
            tenant_id="tnt_acme",
            entity_type=EntityType.DEAL,
            entity_id="deal_42",
            operation="update",
            entity=deal,
            previous_state={**deal, "stage": "negotiation"},
        )
    )
    won = await service.router.raise_event(
        "tnt_acme", EventType.DEAL_WON, EntityType.DEAL, "deal_42", deal
    )
    print(f"  deal.updated queued for {len(updated.queued_ids)} subscription(s)")
    print(f"  deal.won queued for {len(won.queued_ids)} subscription(s)")

    print("\n3. PROCESSOR TICKS")
    print("-" * 70)
    for tick in range(1, 4):
        print(f"  tick {tick}:")
        result = await service.processor.process_batch()
        print(
            f"    = {result.processed} processed, {result.succeeded} ok, "
            f"{result.retried} retried, {result.failed} failed"
        )
        now[0] += timedelta(seconds=10)

    stats = await service.processor.get_queue_stats("tnt_acme")
    print(f"\n  queue: {stats.model_dump()}")

    print("\n4. OPERATOR RETRY OF THE DEAD LETTER")
    print("-" * 70)
    dead = [
        qid for qid in won.queued_ids if (await store.get_delivery(qid)).status == "dead_letter"
    ]
    for queue_id in dead:
        outcome = await service.processor.retry_delivery(queue_id)
        print(f"  retry {queue_id}: {'accepted' if outcome.success else outcome.error}")
    result = await service.processor.process_batch()
    print(f"  tick: {result.succeeded} delivered")

    print("\n5. DELIVERY HISTORY")
    print("-" * 70)
    for attempt in await service.processor.list_delivery_attempts(chat.id):
        print(
            f"  {attempt.created_at:%H:%M:%S} #{attempt.retry_count} "
            f"status={attempt.response_status} success={attempt.success}"
        )

    print("\n" + "=" * 70)


if __name__ == "__main__":
    asyncio.run(main())
