"""Event router: turns CRM mutations into queued webhook deliveries.

CRUD mutations are resolved through the static event table. Domain events
(stage changes, won/lost, lead conversion) go through ``raise_event``.
Nothing in this module raises into the mutation path: routing failures are
logged and absorbed.
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx

from crmhooks.config import settings
from crmhooks.exceptions import StorageError
from crmhooks.models import (
    DeliveryOutcome,
    EntityType,
    EventType,
    FieldChange,
    MutationContext,
    Operation,
    PayloadData,
    QueuedDelivery,
    RoutingResult,
    WebhookPayload,
    resolve_event_type,
)

from .delivery import build_attempt_record, deliver_payload
from .template import apply_payload_template

if TYPE_CHECKING:
    from crmhooks.models import WebhookSubscription
    from crmhooks.storage import WebhookStore

logger = logging.getLogger(__name__)

# Bookkeeping field always left out of diffs
UPDATED_AT_FIELD = "updated_at"

_ABSENT = object()


def _is_internal_field(key: str) -> bool:
    return key.startswith("_") or key == UPDATED_AT_FIELD


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def compute_changes(
    previous: dict[str, Any] | None, current: dict[str, Any]
) -> dict[str, FieldChange] | None:
    """Sparse field-level diff between two entity snapshots.

    Only keys present in ``current`` are considered. A key missing from
    ``previous`` counts as changed. Internal fields (leading underscore) and
    ``updated_at`` are never reported.

    Returns:
        Mapping of key to old/new values, or None if nothing changed or no
        previous snapshot was given.
    """
    if previous is None:
        return None

    changes: dict[str, FieldChange] = {}
    for key, new_value in current.items():
        if _is_internal_field(key):
            continue
        old_value = previous.get(key, _ABSENT)
        if old_value is not _ABSENT and _canonical(old_value) == _canonical(new_value):
            continue
        changes[key] = FieldChange(
            old=None if old_value is _ABSENT else old_value,
            new=new_value,
        )

    return changes or None


def build_payload(event_type: EventType, context: MutationContext) -> WebhookPayload:
    """Build the canonical payload for a CRUD mutation."""
    is_update = context.operation == Operation.UPDATE
    return WebhookPayload(
        event=event_type,
        data=PayloadData(
            entity_type=context.entity_type,
            entity_id=context.entity_id,
            entity=copy.deepcopy(context.entity),
            previous_state=copy.deepcopy(context.previous_state) if is_update else None,
            changes=compute_changes(context.previous_state, context.entity)
            if is_update
            else None,
        ),
        metadata=copy.deepcopy(context.metadata),
    )


class WebhookEventRouter:
    """Routes entity mutations and domain events to subscribed webhooks.

    For each subscriber a QueuedDelivery is inserted. If the insert fails,
    and fallback delivery is enabled, the payload is delivered once inline
    with the same signing and HTTP logic as the queue processor.

    Example:
        ```python
        router = WebhookEventRouter(store)

        await router.route_mutation(
            MutationContext(
                tenant_id="tnt_1",
                entity_type="deal",
                entity_id="deal_42",
                operation="update",
                entity=deal,
                previous_state=old_deal,
            )
        )
        await router.raise_event("tnt_1", EventType.DEAL_WON, EntityType.DEAL, "deal_42", deal)
        ```
    """

    def __init__(
        self,
        store: WebhookStore,
        *,
        fallback_enabled: bool | None = None,
        response_body_max_chars: int | None = None,
        priority: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            store: Queue store.
            fallback_enabled: Inline delivery on enqueue failure. Defaults to settings.
            response_body_max_chars: Attempt-log body cap. Defaults to settings.
            priority: Priority assigned to queued rows (1-10, lower first).
            transport: Optional httpx transport for fallback deliveries.
        """
        self._store = store
        self._fallback_enabled = (
            settings.fallback_delivery_enabled if fallback_enabled is None else fallback_enabled
        )
        self._max_body_chars = (
            settings.response_body_max_chars
            if response_body_max_chars is None
            else response_body_max_chars
        )
        self._priority = priority
        self._transport = transport

    async def route_mutation(self, context: MutationContext) -> RoutingResult:
        """Queue notifications for a CRUD mutation.

        Unmapped (entity, operation) pairs and mutations with no subscribers
        are silently skipped.
        """
        event_type = resolve_event_type(context.entity_type, context.operation)
        if event_type is None:
            logger.debug(
                "No event mapping for %s.%s", context.entity_type.value, context.operation.value
            )
            return RoutingResult()

        try:
            subscribers = await self._find_subscribers(context.tenant_id, event_type)
            if not subscribers:
                return RoutingResult(event_type=event_type)

            payload = build_payload(event_type, context)
            return await self._dispatch(context.tenant_id, payload, subscribers)
        except Exception:
            logger.exception(
                "Webhook routing failed for %s %s", event_type.value, context.entity_id
            )
            return RoutingResult(event_type=event_type)

    async def raise_event(
        self,
        tenant_id: str,
        event_type: EventType,
        entity_type: EntityType,
        entity_id: str,
        entity: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> RoutingResult:
        """Queue notifications for an explicitly raised domain event.

        Used for events that are not inferred from generic CRUD, such as
        ``deal.stage_changed`` or ``lead.converted``. No diff is computed.
        """
        try:
            event_type = EventType(event_type)
            subscribers = await self._find_subscribers(tenant_id, event_type)
            if not subscribers:
                return RoutingResult(event_type=event_type)

            payload = WebhookPayload(
                event=event_type,
                data=PayloadData(
                    entity_type=EntityType(entity_type),
                    entity_id=entity_id,
                    entity=copy.deepcopy(entity),
                ),
                metadata=copy.deepcopy(metadata),
            )
            return await self._dispatch(tenant_id, payload, subscribers)
        except Exception:
            logger.exception(
                "Webhook routing failed for %s %s",
                getattr(event_type, "value", event_type),
                entity_id,
            )
            if isinstance(event_type, EventType):
                return RoutingResult(event_type=event_type)
            return RoutingResult()

    async def _find_subscribers(
        self, tenant_id: str, event_type: EventType
    ) -> list[WebhookSubscription]:
        try:
            return await self._store.list_subscriptions_for_event(tenant_id, event_type)
        except StorageError as e:
            logger.error("Failed to look up webhooks for %s: %s", event_type.value, e)
            return []

    async def _dispatch(
        self,
        tenant_id: str,
        payload: WebhookPayload,
        subscribers: list[WebhookSubscription],
    ) -> RoutingResult:
        result = RoutingResult(event_type=payload.event, payload_id=payload.id)
        body = payload.to_body()

        for subscription in subscribers:
            sub_body = apply_payload_template(subscription.payload_template, body)
            delivery = QueuedDelivery(
                tenant_id=tenant_id,
                subscription_id=subscription.id,
                event_type=payload.event,
                payload_id=payload.id,
                payload=sub_body,
                max_attempts=subscription.max_attempts,
                priority=self._priority,
            )
            try:
                result.queued_ids.append(await self._store.enqueue(delivery))
            except StorageError as e:
                logger.error(
                    "Failed to queue %s for webhook %s: %s",
                    payload.event.value,
                    subscription.id,
                    e,
                )
                if not self._fallback_enabled:
                    continue
                outcome = await self._deliver_inline(subscription, payload, sub_body)
                result.fallback_outcomes.append(outcome)

        logger.debug(
            "Routed %s to %d webhook(s) (%d queued)",
            payload.event.value,
            len(subscribers),
            len(result.queued_ids),
        )
        return result

    async def _deliver_inline(
        self,
        subscription: WebhookSubscription,
        payload: WebhookPayload,
        body: Any,
    ) -> DeliveryOutcome:
        """Single best-effort attempt. Never retried, never re-queued."""
        outcome = await deliver_payload(
            subscription,
            body,
            event_type=payload.event,
            delivery_id=payload.id,
            retry_count=0,
            transport=self._transport,
        )

        try:
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
            if outcome.success:
                await self._store.mark_subscription_success(subscription.id, datetime.now(UTC))
            else:
                await self._store.increment_failure_count(subscription.id)
        except StorageError as e:
            logger.error("Failed to record fallback delivery for %s: %s", subscription.id, e)

        return outcome


async def trigger_entity_webhook(
    store: WebhookStore,
    tenant_id: str,
    entity_type: EntityType,
    entity_id: str,
    operation: Operation,
    entity: dict[str, Any],
    previous_state: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> RoutingResult:
    """Convenience function to route one CRUD mutation."""
    router = WebhookEventRouter(store)
    return await router.route_mutation(
        MutationContext(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            entity=entity,
            previous_state=previous_state,
            metadata=metadata,
        )
    )


async def trigger_lead_converted(
    store: WebhookStore,
    tenant_id: str,
    lead_id: str,
    lead: dict[str, Any],
    converted_to: dict[str, str],
) -> RoutingResult:
    """Raise ``lead.converted`` with the created contact/account/deal IDs."""
    return await WebhookEventRouter(store).raise_event(
        tenant_id,
        EventType.LEAD_CONVERTED,
        EntityType.LEAD,
        lead_id,
        lead,
        {"converted_to": converted_to},
    )


async def trigger_deal_stage_changed(
    store: WebhookStore,
    tenant_id: str,
    deal_id: str,
    deal: dict[str, Any],
    previous_stage: str,
    new_stage: str,
) -> RoutingResult:
    """Raise ``deal.stage_changed``."""
    return await WebhookEventRouter(store).raise_event(
        tenant_id,
        EventType.DEAL_STAGE_CHANGED,
        EntityType.DEAL,
        deal_id,
        deal,
        {"previous_stage": previous_stage, "new_stage": new_stage},
    )


async def trigger_deal_won(
    store: WebhookStore, tenant_id: str, deal_id: str, deal: dict[str, Any]
) -> RoutingResult:
    """Raise ``deal.won``."""
    return await WebhookEventRouter(store).raise_event(
        tenant_id, EventType.DEAL_WON, EntityType.DEAL, deal_id, deal
    )


async def trigger_deal_lost(
    store: WebhookStore, tenant_id: str, deal_id: str, deal: dict[str, Any]
) -> RoutingResult:
    """Raise ``deal.lost``."""
    return await WebhookEventRouter(store).raise_event(
        tenant_id, EventType.DEAL_LOST, EntityType.DEAL, deal_id, deal
    )
