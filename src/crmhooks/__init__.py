"""crmhooks: outbound webhooks for a multi-tenant CRM.

Turns entity mutations (accounts, contacts, leads, deals, campaigns,
bookings) into signed HTTP notifications for tenant-registered endpoints,
through a durable queue with retry and dead-lettering.

Quick Start:
    from crmhooks.service import WebhookService

    async with WebhookService.create() as hooks:
        await hooks.register_subscription(
            tenant_id="tnt_1",
            url="https://hooks.example.com/crm",
            events=["deal.created", "deal.won"],
        )

        # On the mutation path
        await hooks.router.route_mutation(
            MutationContext(
                tenant_id="tnt_1",
                entity_type="deal",
                entity_id="deal_42",
                operation="create",
                entity={"id": "deal_42", "name": "Acme renewal"},
            )
        )

        # From a scheduler
        await hooks.processor.process_batch()

Pipeline:
    - WebhookEventRouter: mutation -> event type -> one queued delivery per subscriber
    - WebhookQueueProcessor: claim -> signed POST -> complete / retry / dead-letter
    - WebhookStore: the queue, subscription and attempt-log contract
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    CRMHooksError,
    DeliveryError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    log_scope,
    unbind_context,
)

# Models
from .models import (
    EntityType,
    EventType,
    MutationContext,
    Operation,
    QueuedDelivery,
    QueueStatus,
    WebhookPayload,
    WebhookSubscription,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "CRMHooksError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "DeliveryError",
    "InvalidTransitionError",
    "ConfigurationError",
    # Logging
    "configure_logging",
    "get_logger",
    "log_scope",
    "bind_context",
    "clear_context",
    "unbind_context",
    # Models
    "EntityType",
    "EventType",
    "MutationContext",
    "Operation",
    "QueuedDelivery",
    "QueueStatus",
    "WebhookPayload",
    "WebhookSubscription",
]
