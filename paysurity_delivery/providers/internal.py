"""
Internal delivery adapter.

Manages deliveries handled by the restaurant's own delivery staff. Deliveries
are tracked in memory; staff dispatch moves them through their lifecycle with
``assign_driver`` and ``update_status`` or by posting signed webhooks.
"""
import hashlib
import hmac
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from pydantic import ValidationError

from paysurity_delivery.core.exceptions import ProviderError, WebhookValidationError
from paysurity_delivery.core.geo import haversine_miles
from paysurity_delivery.core.models import (
    TERMINAL_STATUSES,
    Address,
    DeliveryOrderDetails,
    DeliveryQuote,
    DeliveryStatus,
    DriverInfo,
    DriverLocation,
    ExternalDeliveryOrder,
    OrderDetails,
    ProviderType,
    WebhookUpdate,
    to_money,
    utcnow,
)
from paysurity_delivery.providers.base import (
    DeliveryProviderAdapter,
    canonical_json,
    lower_headers,
    parse_timestamp,
)

logger = structlog.get_logger(__name__)

INTERNAL_PROVIDER_ID = 1
SIGNATURE_HEADER = "x-internal-delivery-signature"

BASE_FEE = Decimal("3.00")
PER_MILE_FEE = Decimal("0.50")
FREE_MILES = 1
PICKUP_LEAD_MINUTES = 15
MINUTES_PER_MILE = 5
QUOTE_VALID_MINUTES = 30


def calculate_fee(distance_miles: float) -> Decimal:
    """Base fee plus a per-mile charge after the first mile."""
    fee = BASE_FEE
    if distance_miles > FREE_MILES:
        fee += (Decimal(str(distance_miles)) - FREE_MILES) * PER_MILE_FEE
    return to_money(fee)


def estimate_times(distance_miles: float, now: datetime) -> Tuple[datetime, datetime]:
    pickup = now + timedelta(minutes=PICKUP_LEAD_MINUTES)
    dropoff = now + timedelta(minutes=PICKUP_LEAD_MINUTES + distance_miles * MINUTES_PER_MILE)
    return pickup, dropoff


def sign_payload(data: Any, secret: str) -> str:
    """Hex HMAC-SHA256 of the canonical payload."""
    return hmac.new(secret.encode("utf-8"), canonical_json(data), hashlib.sha256).hexdigest()


class InternalDeliveryAdapter(DeliveryProviderAdapter):
    """Restaurant staff delivery with in-memory tracking."""

    def __init__(self) -> None:
        self._deliveries: Dict[str, ExternalDeliveryOrder] = {}

    @property
    def name(self) -> str:
        return "Restaurant Delivery"

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.INTERNAL

    async def get_quote(
        self, pickup: Address, delivery: Address, order_details: OrderDetails
    ) -> DeliveryQuote:
        distance = haversine_miles(
            pickup.latitude, pickup.longitude, delivery.latitude, delivery.longitude
        )
        fee = calculate_fee(distance)
        now = utcnow()
        pickup_time, delivery_time = estimate_times(distance, now)

        # Platform markup is applied by the delivery service
        return DeliveryQuote(
            provider_id=INTERNAL_PROVIDER_ID,
            provider_name=self.name,
            fee=fee,
            customer_fee=fee,
            platform_fee=Decimal("0"),
            currency=order_details.currency,
            estimated_pickup_time=pickup_time,
            estimated_delivery_time=delivery_time,
            distance=distance,
            distance_unit="miles",
            valid=True,
            valid_until=now + timedelta(minutes=QUOTE_VALID_MINUTES),
        )

    async def create_delivery(self, order: DeliveryOrderDetails) -> ExternalDeliveryOrder:
        external_order_id = f"INTERNAL-{uuid.uuid4()}"
        now = utcnow()
        distance = haversine_miles(
            order.business_address.latitude,
            order.business_address.longitude,
            order.customer_address.latitude,
            order.customer_address.longitude,
        )
        pickup_time, delivery_time = estimate_times(distance, now)

        delivery = ExternalDeliveryOrder(
            external_order_id=external_order_id,
            status=DeliveryStatus.PENDING,
            estimated_pickup_time=pickup_time,
            estimated_delivery_time=delivery_time,
            provider_data={
                "internalDeliveryId": external_order_id,
                "createdAt": now.isoformat(),
                "distance": distance,
                "orderTotal": str(order.order_details.total_value),
                "deliveryFee": str(order.provider_fee),
            },
        )
        self._deliveries[external_order_id] = delivery
        logger.info(
            "internal_delivery_created",
            external_order_id=external_order_id,
            business_id=order.business_id,
            distance_miles=distance,
        )
        return delivery.model_copy(deep=True)

    async def cancel_delivery(self, external_order_id: str) -> bool:
        delivery = self._deliveries.get(external_order_id)
        if delivery is None:
            logger.warning("internal_delivery_cancel_unknown", external_order_id=external_order_id)
            return False
        if delivery.status in TERMINAL_STATUSES:
            logger.info(
                "internal_delivery_cancel_refused",
                external_order_id=external_order_id,
                status=delivery.status.value,
            )
            return False
        delivery.status = DeliveryStatus.CANCELLED
        logger.info("internal_delivery_cancelled", external_order_id=external_order_id)
        return True

    async def get_delivery_status(self, external_order_id: str) -> DeliveryStatus:
        return self._get(external_order_id).status

    async def acknowledge_status(self, external_order_id: str, status: DeliveryStatus) -> None:
        delivery = self._deliveries.get(external_order_id)
        if delivery is not None:
            delivery.status = DeliveryStatus(status)

    def assign_driver(self, external_order_id: str, driver: DriverInfo) -> ExternalDeliveryOrder:
        """Hand a pending or accepted delivery to a staff driver."""
        delivery = self._get(external_order_id)
        if delivery.status in TERMINAL_STATUSES:
            raise ProviderError(
                f"Cannot assign driver to {delivery.status.value} delivery {external_order_id}"
            )
        delivery.driver_id = driver.id
        delivery.driver_name = driver.name
        delivery.driver_phone = driver.phone
        delivery.driver_location = driver.location
        delivery.status = DeliveryStatus.ASSIGNED
        logger.info(
            "internal_delivery_driver_assigned",
            external_order_id=external_order_id,
            driver_id=driver.id,
        )
        return delivery.model_copy(deep=True)

    def update_status(
        self,
        external_order_id: str,
        status: DeliveryStatus,
        location: Optional[DriverLocation] = None,
    ) -> ExternalDeliveryOrder:
        """Record progress reported by a staff driver."""
        delivery = self._get(external_order_id)
        delivery.status = DeliveryStatus(status)
        if location is not None:
            delivery.driver_location = location
        logger.info(
            "internal_delivery_status_updated",
            external_order_id=external_order_id,
            status=delivery.status.value,
        )
        return delivery.model_copy(deep=True)

    async def parse_webhook_data(
        self, data: Dict[str, Any], headers: Mapping[str, str]
    ) -> WebhookUpdate:
        if not data.get("externalOrderId") or not data.get("status"):
            raise WebhookValidationError("Invalid webhook data: missing required fields")

        if data["status"] not in DeliveryStatus.values():
            raise WebhookValidationError(f"Invalid status: {data['status']}")

        timestamp = parse_timestamp(data.get("timestamp"))
        driver_info = None
        driver = data.get("driver")
        if isinstance(driver, dict):
            location = driver.get("location")
            try:
                driver_info = DriverInfo(
                    id=driver.get("id"),
                    name=driver.get("name"),
                    phone=driver.get("phone"),
                    location=DriverLocation(**location) if isinstance(location, dict) else None,
                )
            except ValidationError as e:
                raise WebhookValidationError(f"Invalid driver data: {e}") from e

        return WebhookUpdate(
            external_order_id=str(data["externalOrderId"]),
            status=DeliveryStatus(data["status"]),
            driver_info=driver_info,
            timestamp=timestamp,
            additional_data={
                "actualPickupTime": data.get("actualPickupTime"),
                "actualDeliveryTime": data.get("actualDeliveryTime"),
                "notes": data.get("notes"),
            },
        )

    async def verify_webhook_signature(
        self, data: Any, headers: Mapping[str, str], secret: str
    ) -> bool:
        provided = lower_headers(headers).get(SIGNATURE_HEADER)
        if not provided:
            return False
        return hmac.compare_digest(provided, sign_payload(data, secret))

    def _get(self, external_order_id: str) -> ExternalDeliveryOrder:
        delivery = self._deliveries.get(external_order_id)
        if delivery is None:
            raise ProviderError(f"Internal delivery {external_order_id} not found")
        return delivery
