"""Delivery queue models.

A QueuedDelivery moves through a small state machine driven by the queue
processor:

    pending -> processing -> completed                 (2xx)
    processing -> pending                              (failure, attempts remain)
    processing -> dead_letter                          (attempts exhausted / subscription gone)
    dead_letter | failed -> pending                    (manual retry)
    pending | failed -> deleted                        (manual cancel)
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import generate_id
from .events import EventType


class QueueStatus(str, Enum):
    """Lifecycle status of a queued delivery."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


TERMINAL_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.DEAD_LETTER}
)
RETRYABLE_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.FAILED, QueueStatus.DEAD_LETTER}
)
CANCELLABLE_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.PENDING, QueueStatus.FAILED}
)


class QueuedDelivery(BaseModel):
    """One (event, subscription) pair awaiting or past delivery.

    Attributes:
        id: Queue row ID.
        tenant_id: Tenant that owns the subscription.
        subscription_id: Target subscription.
        event_type: Event being delivered.
        payload_id: Canonical payload ID, sent as X-Webhook-Id.
        payload: Subscription-specific body (template applied).
        status: Lifecycle status.
        attempt_count: HTTP attempts made so far.
        max_attempts: Attempt ceiling (subscription max_retries + 1).
        next_attempt_at: Earliest time the row may be claimed.
        priority: Ordering within a claim batch, lower first.
        last_attempt_at: When the row was last claimed.
        last_error: Error from the most recent failed attempt.
        last_response_status: HTTP status from the most recent attempt.
        last_response_body: Truncated response body from the most recent attempt.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("que"))
    tenant_id: str
    subscription_id: str
    event_type: EventType
    payload_id: str | None = None
    payload: dict[str, Any] | list[Any] | str
    status: QueueStatus = QueueStatus.PENDING
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    next_attempt_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    priority: int = Field(default=5, ge=1, le=10)
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_response_status: int | None = None
    last_response_body: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _attempts_within_ceiling(self) -> QueuedDelivery:
        if self.attempt_count > self.max_attempts:
            raise ValueError(
                f"attempt_count ({self.attempt_count}) exceeds max_attempts ({self.max_attempts})"
            )
        return self

    @property
    def attempts_remaining(self) -> bool:
        """True if one more failure would still leave room for a retry."""
        return self.attempt_count + 1 < self.max_attempts

    def delivery_id(self) -> str:
        """ID sent as X-Webhook-Id."""
        if self.payload_id:
            return self.payload_id
        if isinstance(self.payload, dict) and isinstance(self.payload.get("id"), str):
            return self.payload["id"]
        return self.id


class DeliveryAttemptRecord(BaseModel):
    """Append-only log entry for one HTTP attempt.

    Never read by the processor's control logic; kept for operators.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("att"))
    subscription_id: str
    queue_id: str | None = None
    event_type: EventType
    payload: dict[str, Any] | list[Any] | str
    success: bool
    response_status: int | None = Field(
        default=None, description="None means no response (timeout or network error)"
    )
    response_body: str | None = None
    latency_ms: int = Field(ge=0)
    retry_count: int = Field(ge=0, description="Ordinal of this attempt (1 = first)")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DeliveryOutcome(BaseModel):
    """Result of a single signed POST."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    success: bool
    response_status: int | None = None
    response_body: str = ""
    latency_ms: int = 0
    error: str | None = None

    def error_summary(self, max_chars: int = 500) -> str:
        """Short error text stored on the queue row."""
        if self.response_status is None:
            return self.error or "Unknown error"
        return f"HTTP {self.response_status}: {self.response_body[:max_chars]}"


class ProcessorResult(BaseModel):
    """Counts for one processor tick."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0


class QueueStats(BaseModel):
    """Number of queued deliveries per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0

    @classmethod
    def from_counts(cls, counts: dict[QueueStatus, int]) -> QueueStats:
        return cls(**{status.value: counts.get(status, 0) for status in QueueStatus})


class AdminResult(BaseModel):
    """Acknowledgement for an operator action.

    ``code`` mirrors the exception code of a rejected action so callers can
    tell a missing row from a disallowed transition.
    """

    success: bool
    error: str | None = None
    code: str | None = None


class RoutingResult(BaseModel):
    """What the router did with one mutation or direct event."""

    event_type: EventType | None = None
    payload_id: str | None = None
    queued_ids: list[str] = Field(default_factory=list)
    fallback_outcomes: list[DeliveryOutcome] = Field(default_factory=list)

    @property
    def notified(self) -> bool:
        return bool(self.queued_ids or self.fallback_outcomes)


__all__ = [
    "CANCELLABLE_STATUSES",
    "RETRYABLE_STATUSES",
    "TERMINAL_STATUSES",
    "AdminResult",
    "DeliveryAttemptRecord",
    "DeliveryOutcome",
    "ProcessorResult",
    "QueueStats",
    "QueueStatus",
    "QueuedDelivery",
    "RoutingResult",
]
