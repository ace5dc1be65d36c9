"""FastAPI router for the crmhooks operator API."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status

from crmhooks import __version__
from crmhooks.exceptions import (
    CRMHooksError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from crmhooks.logging import bind_context, get_logger
from crmhooks.models import AdminResult
from crmhooks.service import WebhookService

from .schemas import (
    ActiveStateRequest,
    AdminActionResponse,
    DeliveryAttemptResponse,
    DeliveryHistoryResponse,
    DeliveryTestResponse,
    HealthResponse,
    ProcessQueueResponse,
    QueueStatsResponse,
    SecretResponse,
    SubscriptionCreatedResponse,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
)

logger = get_logger(__name__)

router = APIRouter()

# Service instance (set by app lifespan)
_service: WebhookService | None = None


def set_service(service: WebhookService | None) -> None:
    """Set the global service instance."""
    global _service
    _service = service


async def get_service() -> WebhookService:
    """Dependency to get the WebhookService instance."""
    if _service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return _service


ServiceDep = Annotated[WebhookService, Depends(get_service)]


def _admin_response(queue_id: str, result: AdminResult, message: str) -> AdminActionResponse:
    """Map an operator action result onto a response or an HTTP error."""
    if result.success:
        return AdminActionResponse(success=True, queue_id=queue_id, message=message)
    if result.code == NotFoundError.code:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    if result.code == InvalidTransitionError.code:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)


def _http_error(error: CRMHooksError) -> HTTPException:
    """Map a service error onto an HTTP error."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check() -> HealthResponse:
    """Check service health."""
    if _service is not None:
        return HealthResponse(status="healthy", version=__version__, store_connected=True)
    return HealthResponse(status="unhealthy", version=__version__, store_connected=False)


@router.get("/queue/stats", response_model=QueueStatsResponse, tags=["queue"])
async def queue_stats(
    service: ServiceDep,
    tenant_id: Annotated[str | None, Query(description="Restrict counts to one tenant")] = None,
) -> QueueStatsResponse:
    """Count queued deliveries per status."""
    stats = await service.processor.get_queue_stats(tenant_id)
    return QueueStatsResponse(tenant_id=tenant_id, **stats.model_dump())


@router.post("/queue/process", response_model=ProcessQueueResponse, tags=["queue"])
async def process_queue(service: ServiceDep) -> ProcessQueueResponse:
    """Run one processor tick.

    Intended for an external scheduler or an operator draining the queue
    by hand. Overlapping calls on the same process return all zeros.
    """
    result = await service.processor.process_batch()
    logger.info(
        "Queue tick via API",
        processed=result.processed,
        succeeded=result.succeeded,
        retried=result.retried,
        failed=result.failed,
    )
    return ProcessQueueResponse(**result.model_dump())


@router.post("/queue/{queue_id}/retry", response_model=AdminActionResponse, tags=["queue"])
async def retry_delivery(queue_id: str, service: ServiceDep) -> AdminActionResponse:
    """Move a failed or dead-lettered delivery back to pending.

    Raises:
        HTTPException: 404 if the delivery is unknown, 409 if its status
            does not allow a retry.
    """
    bind_context(queue_id=queue_id)
    result = await service.processor.retry_delivery(queue_id)
    return _admin_response(queue_id, result, "Delivery queued for retry")


@router.delete("/queue/{queue_id}", response_model=AdminActionResponse, tags=["queue"])
async def cancel_delivery(queue_id: str, service: ServiceDep) -> AdminActionResponse:
    """Cancel a pending or failed delivery.

    Raises:
        HTTPException: 404 if the delivery is unknown, 409 if it is already
            in flight or finished.
    """
    bind_context(queue_id=queue_id)
    result = await service.processor.cancel_delivery(queue_id)
    return _admin_response(queue_id, result, "Delivery cancelled")


@router.get(
    "/webhooks/{subscription_id}/deliveries",
    response_model=DeliveryHistoryResponse,
    tags=["webhooks"],
)
async def delivery_history(
    subscription_id: str,
    service: ServiceDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> DeliveryHistoryResponse:
    """List delivery attempts for a subscription, newest first."""
    records = await service.processor.list_delivery_attempts(subscription_id, limit=limit)
    attempts = [DeliveryAttemptResponse.from_record(record) for record in records]
    return DeliveryHistoryResponse(
        subscription_id=subscription_id, attempts=attempts, count=len(attempts)
    )


@router.post(
    "/webhooks/{subscription_id}/test",
    response_model=DeliveryTestResponse,
    tags=["webhooks"],
)
async def send_test_delivery(subscription_id: str, service: ServiceDep) -> DeliveryTestResponse:
    """Send a synthetic ``account.created`` payload to a subscription once.

    The endpoint's answer is reported in the body; a failing endpoint is not
    an error for this request.

    Raises:
        HTTPException: 404 if the subscription does not exist.
    """
    try:
        outcome = await service.processor.send_test_delivery(subscription_id)
    except NotFoundError as e:
        raise _http_error(e) from e

    logger.info(
        "Test delivery sent",
        subscription_id=subscription_id,
        success=outcome.success,
        status_code=outcome.response_status,
    )
    return DeliveryTestResponse.from_outcome(subscription_id, outcome)


@router.post(
    "/webhooks",
    response_model=SubscriptionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["webhooks"],
)
async def create_subscription(
    request: SubscriptionCreateRequest,
    service: ServiceDep,
) -> SubscriptionCreatedResponse:
    """Register a subscription.

    The signing secret is returned here and by the secret rotation
    endpoint only.

    Raises:
        HTTPException: 400 if an event name or field value is invalid.
    """
    bind_context(tenant_id=request.tenant_id)
    try:
        subscription = await service.register_subscription(
            request.tenant_id,
            request.url,
            request.events,
            headers=request.headers,
            payload_template=request.payload_template,
            max_retries=request.max_retries,
            retry_delay_seconds=request.retry_delay_seconds,
            timeout_seconds=request.timeout_seconds,
            description=request.description,
        )
    except ValidationError as e:
        raise _http_error(e) from e

    logger.info("Subscription registered", subscription_id=subscription.id)
    return SubscriptionCreatedResponse(
        subscription=SubscriptionResponse.from_subscription(subscription),
        secret=subscription.secret,
    )


@router.get("/webhooks", response_model=SubscriptionListResponse, tags=["webhooks"])
async def list_subscriptions(
    service: ServiceDep,
    tenant_id: Annotated[str, Query(min_length=1, description="Owning tenant")],
) -> SubscriptionListResponse:
    """List a tenant's subscriptions, including disabled ones."""
    subscriptions = await service.list_subscriptions(tenant_id)
    return SubscriptionListResponse(
        tenant_id=tenant_id,
        subscriptions=[SubscriptionResponse.from_subscription(s) for s in subscriptions],
        count=len(subscriptions),
    )


@router.get(
    "/webhooks/{subscription_id}", response_model=SubscriptionResponse, tags=["webhooks"]
)
async def get_subscription(subscription_id: str, service: ServiceDep) -> SubscriptionResponse:
    """Get one subscription."""
    try:
        subscription = await service.get_subscription(subscription_id)
    except NotFoundError as e:
        raise _http_error(e) from e
    return SubscriptionResponse.from_subscription(subscription)


@router.patch(
    "/webhooks/{subscription_id}", response_model=SubscriptionResponse, tags=["webhooks"]
)
async def update_subscription(
    subscription_id: str,
    request: SubscriptionUpdateRequest,
    service: ServiceDep,
) -> SubscriptionResponse:
    """Change endpoint, event filter or delivery policy.

    Raises:
        HTTPException: 404 if the subscription does not exist, 400 if a
            new value is invalid.
    """
    bind_context(subscription_id=subscription_id)
    try:
        subscription = await service.update_subscription(
            subscription_id, **request.model_dump(exclude_none=True)
        )
    except (NotFoundError, ValidationError) as e:
        raise _http_error(e) from e
    return SubscriptionResponse.from_subscription(subscription)


@router.put(
    "/webhooks/{subscription_id}/active",
    response_model=SubscriptionResponse,
    tags=["webhooks"],
)
async def set_subscription_active(
    subscription_id: str,
    request: ActiveStateRequest,
    service: ServiceDep,
) -> SubscriptionResponse:
    """Enable or disable a subscription.

    Enabling also clears the failure counter, which is how a subscription
    switched off by repeated failures is brought back.
    """
    bind_context(subscription_id=subscription_id)
    try:
        subscription = await service.set_active(subscription_id, request.is_active)
    except NotFoundError as e:
        raise _http_error(e) from e
    return SubscriptionResponse.from_subscription(subscription)


@router.post(
    "/webhooks/{subscription_id}/secret",
    response_model=SecretResponse,
    tags=["webhooks"],
)
async def regenerate_secret(subscription_id: str, service: ServiceDep) -> SecretResponse:
    """Rotate the signing secret. The new secret is only shown here."""
    bind_context(subscription_id=subscription_id)
    try:
        secret = await service.regenerate_secret(subscription_id)
    except NotFoundError as e:
        raise _http_error(e) from e
    return SecretResponse(subscription_id=subscription_id, secret=secret)
