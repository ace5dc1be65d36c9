"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from crmhooks.models import DeliveryAttemptRecord, DeliveryOutcome, WebhookSubscription


class HealthResponse(BaseModel):
    """Response for health check endpoint.

    Attributes:
        status: Overall health status.
        version: crmhooks version.
        store_connected: Whether a service (and its store) is available.
    """

    model_config = ConfigDict(extra="forbid")

    status: str
    version: str
    store_connected: bool


class ProcessQueueResponse(BaseModel):
    """Counts for one processor tick."""

    model_config = ConfigDict(extra="forbid")

    processed: int = Field(ge=0)
    succeeded: int = Field(ge=0)
    retried: int = Field(ge=0)
    failed: int = Field(ge=0)


class QueueStatsResponse(BaseModel):
    """Queued deliveries per status.

    Attributes:
        tenant_id: Tenant filter applied, if any.
        pending: Waiting for their next attempt.
        processing: Claimed by a processor.
        completed: Delivered with a 2xx response.
        failed: Legacy terminal state, eligible for manual retry.
        dead_letter: Attempts exhausted or subscription gone.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: str | None = None
    pending: int
    processing: int
    completed: int
    failed: int
    dead_letter: int


class AdminActionResponse(BaseModel):
    """Acknowledgement for a retry or cancel action."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    queue_id: str
    message: str


class DeliveryAttemptResponse(BaseModel):
    """One entry from a subscription's delivery log."""

    model_config = ConfigDict(extra="forbid")

    id: str
    queue_id: str | None = None
    event_type: str
    success: bool
    response_status: int | None = None
    response_body: str | None = None
    latency_ms: int
    retry_count: int
    created_at: datetime

    @classmethod
    def from_record(cls, record: DeliveryAttemptRecord) -> DeliveryAttemptResponse:
        return cls(
            id=record.id,
            queue_id=record.queue_id,
            event_type=record.event_type.value,
            success=record.success,
            response_status=record.response_status,
            response_body=record.response_body,
            latency_ms=record.latency_ms,
            retry_count=record.retry_count,
            created_at=record.created_at,
        )


class DeliveryHistoryResponse(BaseModel):
    """Delivery log for a subscription, newest first."""

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    attempts: list[DeliveryAttemptResponse] = Field(default_factory=list)
    count: int = Field(ge=0)


class DeliveryTestResponse(BaseModel):
    """Result of a synthetic test delivery.

    Attributes:
        success: Whether the endpoint answered with a 2xx status.
        status_code: HTTP status, absent on timeout or network error.
        latency_ms: Round-trip time.
        error: Error text for a failed delivery.
    """

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    success: bool
    status_code: int | None = None
    latency_ms: int
    error: str | None = None

    @classmethod
    def from_outcome(
        cls, subscription_id: str, outcome: DeliveryOutcome
    ) -> DeliveryTestResponse:
        return cls(
            subscription_id=subscription_id,
            success=outcome.success,
            status_code=outcome.response_status,
            latency_ms=outcome.latency_ms,
            error=None if outcome.success else outcome.error_summary(),
        )


class SubscriptionCreateRequest(BaseModel):
    """Request body for registering a subscription.

    Attributes:
        tenant_id: Owning tenant.
        url: Endpoint that receives POSTed events.
        events: Event names. All events when omitted.
        headers: Extra request headers.
        payload_template: Optional template with {{dotted.path}} tokens.
        max_retries: Attempts beyond the first. Server default when omitted.
        retry_delay_seconds: Base backoff delay. Server default when omitted.
        timeout_seconds: Per-request timeout. Server default when omitted.
        description: Human-readable label.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    payload_template: dict[str, Any] | list[Any] | str | None = None
    max_retries: int | None = Field(default=None, ge=0, le=20)
    retry_delay_seconds: int | None = Field(default=None, ge=1)
    timeout_seconds: int | None = Field(default=None, ge=1, le=300)
    description: str | None = None


class SubscriptionUpdateRequest(BaseModel):
    """Request body for changing a subscription. Omitted fields are kept."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    events: list[str] | None = None
    headers: dict[str, str] | None = None
    payload_template: dict[str, Any] | list[Any] | str | None = None
    max_retries: int | None = Field(default=None, ge=0, le=20)
    retry_delay_seconds: int | None = Field(default=None, ge=1)
    timeout_seconds: int | None = Field(default=None, ge=1, le=300)
    description: str | None = None


class ActiveStateRequest(BaseModel):
    """Request body for enabling or disabling a subscription."""

    model_config = ConfigDict(extra="forbid")

    is_active: bool


class SubscriptionResponse(BaseModel):
    """A subscription as shown to operators. The secret is never included."""

    model_config = ConfigDict(extra="forbid")

    id: str
    tenant_id: str
    url: str
    events: list[str]
    headers: dict[str, str]
    has_payload_template: bool
    max_retries: int
    retry_delay_seconds: int
    timeout_seconds: int
    is_active: bool
    failure_count: int
    last_triggered_at: datetime | None = None
    description: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> SubscriptionResponse:
        return cls(
            id=subscription.id,
            tenant_id=subscription.tenant_id,
            url=str(subscription.url),
            events=[event.value for event in subscription.events],
            headers=subscription.headers,
            has_payload_template=subscription.payload_template is not None,
            max_retries=subscription.max_retries,
            retry_delay_seconds=subscription.retry_delay_seconds,
            timeout_seconds=subscription.timeout_seconds,
            is_active=subscription.is_active,
            failure_count=subscription.failure_count,
            last_triggered_at=subscription.last_triggered_at,
            description=subscription.description,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class SubscriptionCreatedResponse(BaseModel):
    """A newly registered subscription plus its signing secret, shown once."""

    model_config = ConfigDict(extra="forbid")

    subscription: SubscriptionResponse
    secret: str


class SubscriptionListResponse(BaseModel):
    """Subscriptions of one tenant, newest first."""

    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    subscriptions: list[SubscriptionResponse] = Field(default_factory=list)
    count: int = Field(ge=0)


class SecretResponse(BaseModel):
    """A freshly generated signing secret."""

    model_config = ConfigDict(extra="forbid")

    subscription_id: str
    secret: str
