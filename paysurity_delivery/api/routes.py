"""
API routes for delivery dispatch.
"""
import json
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paysurity_delivery.core.delivery_service import DeliveryService
from paysurity_delivery.core.exceptions import (
    DeliveryError,
    DeliveryNotFoundError,
    WebhookError,
)
from paysurity_delivery.core.models import (
    BusinessDeliverySettings,
    CreatedDelivery,
    DeliveryOrder,
    DeliveryOrderDetails,
    DeliveryStatus,
    DeliveryStatusUpdate,
    StatusChange,
)
from paysurity_delivery.monitoring.health import HealthCheck
from paysurity_delivery.monitoring.metrics import metrics

from .schemas import (
    CancelDeliveryRequest,
    CancelDeliveryResponse,
    HealthCheckResponse,
    ProviderResponse,
    QuoteListResponse,
    QuoteRequest,
    StatusUpdateRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

delivery_router = APIRouter(prefix="/delivery", tags=["delivery"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

_delivery_service: Optional[DeliveryService] = None


def get_delivery_service() -> DeliveryService:
    """Process-wide delivery service, created on first use."""
    global _delivery_service
    if _delivery_service is None:
        _delivery_service = DeliveryService()
    return _delivery_service


def _http_error(e: DeliveryError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.message)


@delivery_router.get(
    "/providers",
    response_model=List[ProviderResponse],
    summary="List delivery providers",
)
async def list_providers(
    service: DeliveryService = Depends(get_delivery_service),
) -> List[Dict[str, Any]]:
    await service.initialize()
    return service.list_providers()


@delivery_router.post(
    "/quotes",
    response_model=QuoteListResponse,
    summary="Quote a delivery",
    description="Request quotes from every available provider, best first",
)
async def get_quotes(
    request: QuoteRequest,
    service: DeliveryService = Depends(get_delivery_service),
) -> Dict[str, Any]:
    logger.info("api_quote_request", business_id=request.business_id)
    try:
        quotes = await service.get_delivery_quotes(
            request.pickup,
            request.delivery,
            request.order_details,
            business_id=request.business_id,
        )
    except DeliveryError as e:
        logger.error("api_quote_error", error=str(e))
        raise _http_error(e)
    return {"quotes": quotes}


@delivery_router.post(
    "/orders",
    response_model=CreatedDelivery,
    status_code=status.HTTP_201_CREATED,
    summary="Create a delivery",
)
async def create_delivery(
    request: DeliveryOrderDetails,
    service: DeliveryService = Depends(get_delivery_service),
) -> CreatedDelivery:
    logger.info(
        "api_create_delivery_request",
        business_id=request.business_id,
        provider_id=request.provider_id,
        order_id=request.order_id,
    )
    try:
        created = await service.create_delivery_order(request)
    except DeliveryError as e:
        logger.error("api_create_delivery_error", error=str(e))
        raise _http_error(e)

    logger.info("api_create_delivery_success", delivery_id=created.id)
    return created


@delivery_router.get(
    "/orders/{delivery_id}",
    response_model=DeliveryOrder,
    summary="Get a delivery",
    description="Fetch a delivery, refreshing its status from the provider",
)
async def get_delivery(
    delivery_id: int,
    service: DeliveryService = Depends(get_delivery_service),
) -> DeliveryOrder:
    delivery = await service.get_delivery_order(delivery_id)
    if delivery is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delivery not found")
    return delivery


@delivery_router.post(
    "/orders/{delivery_id}/cancel",
    response_model=CancelDeliveryResponse,
    summary="Cancel a delivery",
)
async def cancel_delivery(
    delivery_id: int,
    request: Optional[CancelDeliveryRequest] = None,
    service: DeliveryService = Depends(get_delivery_service),
) -> Dict[str, Any]:
    reason = request.reason if request else None
    cancelled = await service.cancel_delivery(delivery_id, reason)
    logger.info("api_cancel_delivery", delivery_id=delivery_id, cancelled=cancelled)
    return {"delivery_id": delivery_id, "cancelled": cancelled}


@delivery_router.patch(
    "/orders/{delivery_id}/status",
    response_model=StatusChange,
    summary="Update delivery status manually",
)
async def update_status(
    delivery_id: int,
    request: StatusUpdateRequest,
    service: DeliveryService = Depends(get_delivery_service),
) -> StatusChange:
    try:
        return await service.update_delivery_status(
            delivery_id, request.status, request.timestamp
        )
    except DeliveryNotFoundError as e:
        raise _http_error(e)


@delivery_router.get(
    "/orders/{delivery_id}/history",
    response_model=List[DeliveryStatusUpdate],
    summary="Delivery status history",
)
async def get_history(
    delivery_id: int,
    service: DeliveryService = Depends(get_delivery_service),
) -> List[DeliveryStatusUpdate]:
    try:
        return await service.get_status_history(delivery_id)
    except DeliveryNotFoundError as e:
        raise _http_error(e)


@delivery_router.get(
    "/businesses/{business_id}/orders",
    response_model=List[DeliveryOrder],
    summary="List a business's deliveries",
)
async def list_business_deliveries(
    business_id: int,
    delivery_status: Optional[DeliveryStatus] = Query(default=None, alias="status"),
    order_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    service: DeliveryService = Depends(get_delivery_service),
) -> List[DeliveryOrder]:
    return await service.get_business_delivery_orders(
        business_id,
        status=delivery_status,
        order_id=order_id,
        limit=limit,
        offset=offset,
        start_date=start_date,
        end_date=end_date,
    )


@delivery_router.get(
    "/businesses/{business_id}/settings",
    response_model=BusinessDeliverySettings,
    summary="Get a business's delivery settings",
)
async def get_business_settings(
    business_id: int,
    service: DeliveryService = Depends(get_delivery_service),
) -> BusinessDeliverySettings:
    settings = await service.get_business_settings(business_id)
    if settings is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Delivery settings not found"
        )
    return settings


@delivery_router.put(
    "/businesses/{business_id}/settings",
    response_model=BusinessDeliverySettings,
    summary="Save a business's delivery settings",
)
async def save_business_settings(
    business_id: int,
    request: BusinessDeliverySettings,
    service: DeliveryService = Depends(get_delivery_service),
) -> BusinessDeliverySettings:
    if request.business_id != business_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="business_id in body does not match path",
        )
    try:
        return await service.save_business_settings(request)
    except DeliveryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


@webhook_router.post(
    "/{provider_type}",
    response_model=WebhookResponse,
    summary="Delivery provider webhook",
    description="Receive a status update pushed by a delivery provider",
)
async def provider_webhook(
    provider_type: str,
    request: Request,
    service: DeliveryService = Depends(get_delivery_service),
) -> Dict[str, Any]:
    start_time = time.time()
    body = await request.body()
    try:
        data = json.loads(body)
    except ValueError:
        metrics.record_webhook_event(provider_type, "rejected", time.time() - start_time)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(data, dict):
        metrics.record_webhook_event(provider_type, "rejected", time.time() - start_time)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook body must be an object"
        )

    try:
        result = await service.process_webhook(provider_type, data, dict(request.headers))
    except WebhookError as e:
        logger.warning("api_webhook_rejected", provider_type=provider_type, error=str(e))
        metrics.record_webhook_event(provider_type, "rejected", time.time() - start_time)
        raise _http_error(e)

    if result is None:
        metrics.record_webhook_event(provider_type, "ignored", time.time() - start_time)
        return {"status": "ignored", "message": "Delivery not found"}

    outcome = "duplicate" if result.duplicate else "processed"
    metrics.record_webhook_event(provider_type, outcome, time.time() - start_time)
    return {
        "status": outcome,
        "delivery_id": result.delivery_id,
        "old_status": result.old_status,
        "new_status": result.new_status,
        "driver_info": result.driver_info,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(
    response: Response,
    service: DeliveryService = Depends(get_delivery_service),
) -> Dict[str, Any]:
    result = await HealthCheck(service).check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(service: DeliveryService = Depends(get_delivery_service)) -> Dict[str, Any]:
    return await HealthCheck(service).liveness()


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
