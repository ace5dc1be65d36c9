"""Models for crmhooks.

Event vocabulary:
    - EntityType, Operation, EventType: closed enumerations
    - EVENT_TABLE: static (entity, operation) -> event mapping

Webhook models:
    - WebhookSubscription: tenant endpoint plus filter and delivery policy
    - WebhookPayload: canonical notification body
    - MutationContext: an entity mutation reported by the CRM layer

Queue models:
    - QueuedDelivery: one (event, subscription) pair and its lifecycle
    - DeliveryAttemptRecord: append-only per-attempt log entry
"""

from .base import generate_id
from .events import (
    ALL_EVENT_TYPES,
    DIRECT_EVENT_TYPES,
    EVENT_TABLE,
    EntityType,
    EventType,
    Operation,
    resolve_event_type,
)
from .queue import (
    CANCELLABLE_STATUSES,
    RETRYABLE_STATUSES,
    TERMINAL_STATUSES,
    AdminResult,
    DeliveryAttemptRecord,
    DeliveryOutcome,
    ProcessorResult,
    QueuedDelivery,
    QueueStats,
    QueueStatus,
    RoutingResult,
)
from .webhook import (
    FieldChange,
    MutationContext,
    PayloadData,
    PayloadTemplate,
    WebhookPayload,
    WebhookSubscription,
)

__all__ = [
    "generate_id",
    # Events
    "ALL_EVENT_TYPES",
    "DIRECT_EVENT_TYPES",
    "EVENT_TABLE",
    "EntityType",
    "EventType",
    "Operation",
    "resolve_event_type",
    # Webhook
    "FieldChange",
    "MutationContext",
    "PayloadData",
    "PayloadTemplate",
    "WebhookPayload",
    "WebhookSubscription",
    # Queue
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
