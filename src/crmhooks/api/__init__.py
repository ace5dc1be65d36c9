"""FastAPI operator API for crmhooks.

Exposes queue statistics, a manual processor tick, retry and cancel of
queued deliveries, per-subscription delivery history and test deliveries.

Example:
    ```python
    import uvicorn
    from crmhooks.api import create_app

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
    ```

Or run directly:
    ```bash
    uvicorn crmhooks.api:app --reload
    ```
"""

from .app import app, create_app
from .router import router

__all__ = [
    "app",
    "create_app",
    "router",
]
