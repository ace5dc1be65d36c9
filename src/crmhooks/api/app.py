"""FastAPI application for crmhooks."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crmhooks import __version__
from crmhooks.config import Settings
from crmhooks.exceptions import (
    CRMHooksError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from crmhooks.logging import bind_context, clear_context, configure_logging, get_logger
from crmhooks.service import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Creates the WebhookService on startup and releases it on shutdown.
    """
    settings = Settings()

    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info(
        "Starting crmhooks API", log_level=settings.log_level, log_format=settings.log_format
    )

    service = WebhookService.create(settings)
    set_service(service)

    yield

    await service.close()
    set_service(None)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from crmhooks.api import create_app

        app = create_app()
        # Run with: uvicorn crmhooks.api:app --reload
        ```
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="crmhooks",
        description="Outbound webhook routing and delivery for a multi-tenant CRM.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_log_context(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Scope log context to one request and log its outcome."""
        clear_context()
        bind_context(method=request.method, route=request.url.path)
        tenant_id = request.query_params.get("tenant_id")
        if tenant_id:
            bind_context(tenant_id=tenant_id)

        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        """Handle disallowed queue transitions with 409 status."""
        logger.info(
            "Invalid queue transition",
            resource_id=exc.resource_id,
            current_status=exc.current,
            action=exc.action,
            path=str(request.url),
        )
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(CRMHooksError)
    async def crmhooks_error_handler(request: Request, exc: CRMHooksError) -> JSONResponse:
        """Handle all other crmhooks errors with 500 status."""
        logger.error("crmhooks error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())

    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
