"""Event vocabulary: entity types, operations and webhook event types.

CRUD mutations are mapped to event types through a static table. Domain
events that are not simple CRUD (stage changes, won/lost, conversions) are
raised directly through the router's ``raise_event`` API instead.
"""

from __future__ import annotations

from enum import Enum


class EntityType(str, Enum):
    """CRM entity kinds that can produce webhook events."""

    ACCOUNT = "account"
    CONTACT = "contact"
    LEAD = "lead"
    DEAL = "deal"
    CAMPAIGN = "campaign"
    BOOKING = "booking"


class Operation(str, Enum):
    """Mutation kinds reported by the entity layer."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EventType(str, Enum):
    """Closed set of event types a subscription can filter on."""

    ACCOUNT_CREATED = "account.created"
    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_DELETED = "account.deleted"
    CONTACT_CREATED = "contact.created"
    CONTACT_UPDATED = "contact.updated"
    CONTACT_DELETED = "contact.deleted"
    LEAD_CREATED = "lead.created"
    LEAD_UPDATED = "lead.updated"
    LEAD_DELETED = "lead.deleted"
    LEAD_CONVERTED = "lead.converted"
    DEAL_CREATED = "deal.created"
    DEAL_UPDATED = "deal.updated"
    DEAL_DELETED = "deal.deleted"
    DEAL_STAGE_CHANGED = "deal.stage_changed"
    DEAL_WON = "deal.won"
    DEAL_LOST = "deal.lost"
    CAMPAIGN_CREATED = "campaign.created"
    CAMPAIGN_UPDATED = "campaign.updated"
    CAMPAIGN_DELETED = "campaign.deleted"
    BOOKING_CREATED = "booking.created"
    BOOKING_CONFIRMED = "booking.confirmed"
    BOOKING_CANCELLED = "booking.cancelled"


ALL_EVENT_TYPES: list[EventType] = list(EventType)

# Raised only through the direct-event API, never inferred from CRUD
DIRECT_EVENT_TYPES: frozenset[EventType] = frozenset(
    {
        EventType.LEAD_CONVERTED,
        EventType.DEAL_STAGE_CHANGED,
        EventType.DEAL_WON,
        EventType.DEAL_LOST,
    }
)


def _crud_rows() -> dict[tuple[EntityType, Operation], EventType]:
    rows: dict[tuple[EntityType, Operation], EventType] = {}
    for entity in (
        EntityType.ACCOUNT,
        EntityType.CONTACT,
        EntityType.LEAD,
        EntityType.DEAL,
        EntityType.CAMPAIGN,
    ):
        for operation in Operation:
            rows[(entity, operation)] = EventType(f"{entity.value}.{operation.value}d")
    return rows


EVENT_TABLE: dict[tuple[EntityType, Operation], EventType] = {
    **_crud_rows(),
    (EntityType.BOOKING, Operation.CREATE): EventType.BOOKING_CREATED,
    (EntityType.BOOKING, Operation.UPDATE): EventType.BOOKING_CONFIRMED,
    (EntityType.BOOKING, Operation.DELETE): EventType.BOOKING_CANCELLED,
}


def resolve_event_type(entity_type: EntityType, operation: Operation) -> EventType | None:
    """Look up the event type for a CRUD mutation.

    Returns None when the pair has no mapping. That is a routing no-op,
    not an error.
    """
    return EVENT_TABLE.get((EntityType(entity_type), Operation(operation)))


__all__ = [
    "ALL_EVENT_TYPES",
    "DIRECT_EVENT_TYPES",
    "EVENT_TABLE",
    "EntityType",
    "EventType",
    "Operation",
    "resolve_event_type",
]
