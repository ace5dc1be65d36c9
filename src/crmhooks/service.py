"""crmhooks service layer.

Wires a store, an event router and a queue processor from one Settings
object, and adds subscription management on top.

Example:
    ```python
    from crmhooks.service import WebhookService

    async with WebhookService.create() as hooks:
        subscription = await hooks.register_subscription(
            tenant_id="tnt_1",
            url="https://hooks.example.com/crm",
            events=["deal.won", "deal.lost"],
        )
        print(f"Signing secret: {subscription.secret}")

        await hooks.router.raise_event(
            "tnt_1", EventType.DEAL_WON, EntityType.DEAL, "deal_42", deal
        )
        result = await hooks.processor.process_batch()
        print(f"Delivered {result.succeeded} webhook(s)")
    ```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from crmhooks.config import Settings
from crmhooks.exceptions import NotFoundError, ValidationError
from crmhooks.models import EventType, WebhookSubscription
from crmhooks.storage import InMemoryWebhookStore, WebhookStore
from crmhooks.webhooks import (
    WebhookEventRouter,
    WebhookQueueProcessor,
    generate_webhook_secret,
)

if TYPE_CHECKING:
    from crmhooks.models import PayloadTemplate

logger = logging.getLogger(__name__)


@dataclass
class WebhookService:
    """High-level entry point for the outbound webhook pipeline.

    Attributes:
        store: Subscription, queue and attempt-log store.
        router: Event router used on the mutation path.
        processor: Queue processor driven by a scheduler or the operator API.
        settings: Configuration settings.
    """

    store: WebhookStore
    router: WebhookEventRouter
    processor: WebhookQueueProcessor
    settings: Settings

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        store: WebhookStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> WebhookService:
        """Create a WebhookService with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.
            store: Optional store. An InMemoryWebhookStore is created if None.
            transport: Optional httpx transport shared by router and processor.

        Returns:
            Configured WebhookService instance.
        """
        if settings is None:
            settings = Settings()

        if store is None:
            store = InMemoryWebhookStore(
                retry_max_delay_seconds=settings.retry_max_delay_seconds,
                failure_auto_disable_threshold=settings.failure_auto_disable_threshold,
            )

        return cls(
            store=store,
            router=WebhookEventRouter(
                store,
                fallback_enabled=settings.fallback_delivery_enabled,
                response_body_max_chars=settings.response_body_max_chars,
                transport=transport,
            ),
            processor=WebhookQueueProcessor(
                store,
                batch_size=settings.queue_batch_size,
                max_concurrent=settings.effective_max_concurrency,
                response_body_max_chars=settings.response_body_max_chars,
                error_message_max_chars=settings.error_message_max_chars,
                transport=transport,
            ),
            settings=settings,
        )

    async def close(self) -> None:
        """Release resources. The in-memory store holds none."""

    async def __aenter__(self) -> WebhookService:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def register_subscription(
        self,
        tenant_id: str,
        url: str,
        events: list[EventType] | list[str] | None = None,
        *,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        payload_template: PayloadTemplate | None = None,
        max_retries: int | None = None,
        retry_delay_seconds: int | None = None,
        timeout_seconds: int | None = None,
        description: str | None = None,
    ) -> WebhookSubscription:
        """Create and store a subscription.

        Unset delivery policy values fall back to the configured defaults.
        A signing secret is generated when none is given.

        Raises:
            ValidationError: If an event name is unknown or a field is invalid.
        """
        subscription = _validated(
            {
                "tenant_id": tenant_id,
                "url": url,
                "secret": secret or generate_webhook_secret(),
                "events": list(EventType) if events is None else _parse_events(events),
                "headers": headers or {},
                "payload_template": payload_template,
                "max_retries": (
                    self.settings.default_max_retries if max_retries is None else max_retries
                ),
                "retry_delay_seconds": (
                    retry_delay_seconds or self.settings.default_retry_delay_seconds
                ),
                "timeout_seconds": timeout_seconds or self.settings.default_timeout_seconds,
                "description": description,
            }
        )
        await self.store.save_subscription(subscription)
        logger.info("Registered subscription %s for tenant %s", subscription.id, tenant_id)
        return subscription

    async def get_subscription(self, subscription_id: str) -> WebhookSubscription:
        """Fetch a subscription.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        subscription = await self.store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_subscriptions(self, tenant_id: str) -> list[WebhookSubscription]:
        """All subscriptions of a tenant, including inactive ones, newest first."""
        return await self.store.list_subscriptions(tenant_id)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        url: str | None = None,
        events: list[EventType] | list[str] | None = None,
        headers: dict[str, str] | None = None,
        payload_template: PayloadTemplate | None = None,
        max_retries: int | None = None,
        retry_delay_seconds: int | None = None,
        timeout_seconds: int | None = None,
        description: str | None = None,
    ) -> WebhookSubscription:
        """Change endpoint, event filter or delivery policy.

        Only the given fields change. Rows already queued keep the
        max_attempts they were created with.

        Raises:
            NotFoundError: If the subscription does not exist.
            ValidationError: If a new value is invalid.
        """
        current = await self.get_subscription(subscription_id)

        changes: dict[str, Any] = {
            "url": url,
            "events": None if events is None else _parse_events(events),
            "headers": headers,
            "payload_template": payload_template,
            "max_retries": max_retries,
            "retry_delay_seconds": retry_delay_seconds,
            "timeout_seconds": timeout_seconds,
            "description": description,
        }
        changes = {field: value for field, value in changes.items() if value is not None}
        if not changes:
            return current

        candidate = _validated({**current.model_dump(mode="json"), **changes})
        return await self._apply(
            subscription_id, {field: getattr(candidate, field) for field in changes}
        )

    async def set_active(self, subscription_id: str, is_active: bool) -> WebhookSubscription:
        """Enable or disable a subscription.

        Re-enabling clears failure_count, so a subscription switched off by
        the failure threshold starts over.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        changes: dict[str, Any] = {"is_active": is_active}
        if is_active:
            changes["failure_count"] = 0
        subscription = await self._apply(subscription_id, changes)
        logger.info(
            "Subscription %s %s", subscription_id, "enabled" if is_active else "disabled"
        )
        return subscription

    async def regenerate_secret(self, subscription_id: str) -> str:
        """Replace the signing secret and return the new one.

        Deliveries already queued are signed with the new secret when sent.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        secret = generate_webhook_secret()
        await self._apply(subscription_id, {"secret": secret})
        logger.info("Signing secret rotated for subscription %s", subscription_id)
        return secret

    async def _apply(self, subscription_id: str, changes: dict[str, Any]) -> WebhookSubscription:
        updated = await self.store.update_subscription(subscription_id, changes)
        if updated is None:
            raise NotFoundError("subscription", subscription_id)
        return updated


def _parse_events(events: list[EventType] | list[str]) -> list[EventType]:
    parsed = []
    for event in events:
        try:
            parsed.append(EventType(event))
        except ValueError as e:
            raise ValidationError("events", f"unknown event type '{event}'") from e
    return parsed


def _validated(data: dict[str, Any]) -> WebhookSubscription:
    """Build a subscription, reporting the first invalid field as ValidationError."""
    try:
        return WebhookSubscription.model_validate(data)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "subscription"
        raise ValidationError(field, error["msg"]) from e


__all__ = ["WebhookService"]
