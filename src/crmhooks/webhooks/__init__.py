"""Outbound webhook pipeline for crmhooks.

Routes CRM mutations to subscribed endpoints through a durable queue and
delivers them as HMAC-signed POSTs with exponential backoff retry.

Example:
    ```python
    from crmhooks.webhooks import WebhookEventRouter, WebhookQueueProcessor

    # On the mutation path
    router = WebhookEventRouter(store)
    await router.route_mutation(context)

    # From a scheduler
    processor = WebhookQueueProcessor(store)
    await processor.process_batch()

    # Using convenience functions
    await trigger_deal_won(store, tenant_id="tnt_1", deal_id="deal_42", deal=deal)
    await process_webhook_queue(store)
    ```
"""

from .delivery import build_attempt_record, deliver_payload
from .processor import WebhookQueueProcessor, process_webhook_queue
from .router import (
    WebhookEventRouter,
    build_payload,
    compute_changes,
    trigger_deal_lost,
    trigger_deal_stage_changed,
    trigger_deal_won,
    trigger_entity_webhook,
    trigger_lead_converted,
)
from .signing import (
    build_headers,
    compute_signature,
    generate_webhook_secret,
    serialize_payload,
    verify_signature,
)
from .template import apply_payload_template, render_template

__all__ = [
    # Router
    "WebhookEventRouter",
    "build_payload",
    "compute_changes",
    "trigger_deal_lost",
    "trigger_deal_stage_changed",
    "trigger_deal_won",
    "trigger_entity_webhook",
    "trigger_lead_converted",
    # Processor
    "WebhookQueueProcessor",
    "process_webhook_queue",
    # Delivery
    "build_attempt_record",
    "deliver_payload",
    # Signing
    "build_headers",
    "compute_signature",
    "generate_webhook_secret",
    "serialize_payload",
    "verify_signature",
    # Templates
    "apply_payload_template",
    "render_template",
]
