"""Webhook subscription and payload models.

A subscription is a tenant's registered endpoint plus its event filter and
delivery policy. A payload is the canonical JSON body describing one event;
subscriptions with a template receive a transformed copy of it.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from .base import generate_id
from .events import ALL_EVENT_TYPES, EntityType, EventType, Operation

# Templates are arbitrary JSON structures whose string leaves may hold {{path}} tokens
PayloadTemplate = dict[str, Any] | list[Any] | str


class WebhookSubscription(BaseModel):
    """A tenant-owned external endpoint registration.

    Attributes:
        id: Unique identifier for this subscription.
        tenant_id: Tenant that owns the subscription.
        url: Endpoint that receives POSTed events.
        secret: Shared secret for HMAC-SHA256 signing. Never transmitted.
        events: Event types this subscription receives.
        headers: Extra request headers. Cannot override the X-Webhook-* headers.
        payload_template: Optional template used to reshape the payload.
        max_retries: Additional attempts beyond the first.
        retry_delay_seconds: Base backoff delay, doubled per attempt by the store.
        timeout_seconds: Per-request HTTP timeout.
        is_active: Inactive subscriptions receive nothing.
        failure_count: Consecutive terminal failures, reset on success.
        last_triggered_at: Time of the last successful delivery.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("whk"))
    tenant_id: str = Field(description="Tenant that owns this subscription")
    url: HttpUrl = Field(description="Endpoint to receive events")
    secret: str = Field(repr=False, description="Shared secret for HMAC-SHA256 signatures")
    events: list[EventType] = Field(
        default_factory=lambda: list(ALL_EVENT_TYPES),
        description="Event types to subscribe to",
    )
    headers: dict[str, str] = Field(default_factory=dict, description="Custom request headers")
    payload_template: PayloadTemplate | None = Field(
        default=None, description="Template with {{dotted.path}} tokens"
    )
    max_retries: int = Field(default=3, ge=0, le=20, description="Attempts beyond the first")
    retry_delay_seconds: int = Field(default=60, ge=1, description="Base retry delay")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="HTTP timeout")
    is_active: bool = Field(default=True, description="Whether the subscription is active")
    failure_count: int = Field(default=0, ge=0, description="Consecutive terminal failures")
    last_triggered_at: datetime | None = Field(
        default=None, description="When the last successful delivery happened"
    )
    description: str | None = Field(default=None, description="Human-readable description")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def max_attempts(self) -> int:
        """Total attempts a queued delivery for this subscription gets."""
        return self.max_retries + 1

    def subscribes_to(self, event_type: EventType) -> bool:
        """Check if this subscription is active and receives the given event type."""
        return self.is_active and EventType(event_type) in self.events


class FieldChange(BaseModel):
    """Old and new value of one changed field."""

    model_config = ConfigDict(frozen=True)

    old: Any = None
    new: Any = None


class PayloadData(BaseModel):
    """The ``data`` object of a webhook payload."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    entity_type: EntityType
    entity_id: str
    entity: dict[str, Any]
    previous_state: dict[str, Any] | None = None
    changes: dict[str, FieldChange] | None = None


class WebhookPayload(BaseModel):
    """Canonical notification body.

    Immutable once built. Subscription templates derive transformed copies
    through ``to_body()`` and never modify this instance.

    Attributes:
        id: Unique payload ID, also sent as the X-Webhook-Id header.
        event: Event type.
        created_at: When the payload was built.
        data: Entity snapshot, optional previous snapshot and field diff.
        metadata: Free-form event detail (e.g. stage change).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("evt"))
    event: EventType
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: PayloadData
    metadata: dict[str, Any] | None = None

    def to_body(self) -> dict[str, Any]:
        """Render the JSON-ready body.

        Optional members that are unset are omitted rather than sent as null,
        so an absent ``changes`` means "no field-level diff available".
        Nulls inside the entity snapshots are preserved.
        """
        body = self.model_dump(mode="json")
        data = body["data"]
        for key in ("previous_state", "changes"):
            if data.get(key) is None:
                data.pop(key, None)
        if body.get("metadata") is None:
            body.pop("metadata", None)
        return body


class MutationContext(BaseModel):
    """An entity mutation reported by the CRM layer.

    Attributes:
        tenant_id: Tenant the entity belongs to.
        user_id: User who performed the mutation (optional).
        entity_type: Kind of entity mutated.
        entity_id: ID of the entity.
        operation: create, update or delete.
        entity: Current entity snapshot (last known snapshot for deletes).
        previous_state: Snapshot before an update.
        metadata: Pass-through event detail.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(min_length=1)
    user_id: str | None = None
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    operation: Operation
    entity: dict[str, Any] = Field(default_factory=dict)
    previous_state: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


__all__ = [
    "FieldChange",
    "MutationContext",
    "PayloadData",
    "PayloadTemplate",
    "WebhookPayload",
    "WebhookSubscription",
]
