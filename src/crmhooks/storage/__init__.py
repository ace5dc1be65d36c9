"""Storage for crmhooks.

The pipeline talks to persistence only through the WebhookStore port.
InMemoryWebhookStore is the bundled implementation.

Example:
    ```python
    from crmhooks.storage import InMemoryWebhookStore

    store = InMemoryWebhookStore()
    await store.save_subscription(subscription)
    claimed = await store.claim_due(batch_size=10)
    ```
"""

from .base import WebhookStore
from .memory import InMemoryWebhookStore, compute_backoff

__all__ = [
    "InMemoryWebhookStore",
    "WebhookStore",
    "compute_backoff",
]
