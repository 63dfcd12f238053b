"""
DoorDash Drive delivery adapter.

Integrates with the DoorDash Drive API to dispatch Dashers for deliveries.

Implements:
- JWT access tokens, cached until shortly before expiry
- Exponential backoff for transient errors
- Circuit breaker pattern
- Status and webhook translation into the common delivery vocabulary

Documentation: https://developer.doordash.com/en-US/api/drive
"""
import hashlib
import hmac
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
import jwt
import structlog
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from paysurity_delivery.core.exceptions import (
    DeliveryError,
    ProviderAPIError,
    ProviderError,
    WebhookValidationError,
)
from paysurity_delivery.core.geo import meters_to_miles
from paysurity_delivery.core.models import (
    Address,
    DeliveryOrderDetails,
    DeliveryQuote,
    DeliveryStatus,
    DriverInfo,
    DriverLocation,
    ExternalDeliveryOrder,
    OrderDetails,
    OrderItem,
    ProviderType,
    WebhookUpdate,
    utcnow,
)
from paysurity_delivery.monitoring.metrics import metrics
from paysurity_delivery.providers.base import (
    DeliveryProviderAdapter,
    canonical_json,
    lower_headers,
    parse_timestamp,
)
from paysurity_delivery.providers.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://openapi.doordash.com/drive/v2"
SIGNATURE_HEADER = "doordash-signature"
TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60
QUOTE_VALID_MINUTES = 5
DEFAULT_PICKUP_MINUTES = 15
DEFAULT_DROPOFF_MINUTES = 45

STATUS_MAP: Dict[str, DeliveryStatus] = {
    "created": DeliveryStatus.PENDING,
    "accepted": DeliveryStatus.ACCEPTED,
    "en_route_to_pickup": DeliveryStatus.ASSIGNED,
    "arrived_at_pickup": DeliveryStatus.ASSIGNED,
    "en_route_to_dropoff": DeliveryStatus.PICKED_UP,
    "en_route_to_return": DeliveryStatus.IN_TRANSIT,
    "arrived_at_dropoff": DeliveryStatus.IN_TRANSIT,
    "delivered": DeliveryStatus.DELIVERED,
    "returned": DeliveryStatus.FAILED,
    "cancelled": DeliveryStatus.CANCELLED,
    "courier_canceled": DeliveryStatus.CANCELLED,
    "failed": DeliveryStatus.FAILED,
}


def map_doordash_status(doordash_status: Optional[str]) -> DeliveryStatus:
    """Map a DoorDash status onto DeliveryStatus, defaulting to pending."""
    if not isinstance(doordash_status, str) or not doordash_status:
        return DeliveryStatus.PENDING
    return STATUS_MAP.get(doordash_status.lower(), DeliveryStatus.PENDING)


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, ProviderAPIError):
        return error.is_transient
    return isinstance(error, httpx.TransportError)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


class DoorDashAdapter(DeliveryProviderAdapter):
    """
    DoorDash Drive API adapter.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Cached JWT authentication
    """

    def __init__(
        self,
        developer_id: str,
        key_id: str,
        signing_secret: str,
        base_url: str = DEFAULT_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize DoorDash adapter.

        Args:
            developer_id: DoorDash developer ID, used as JWT issuer
            key_id: Signing key ID, used as JWT kid
            signing_secret: Secret the JWT is signed with
            base_url: Drive API base URL
            http_client: Optional pre-built HTTP client (tests inject a mock transport)
            timeout: Request timeout in seconds
            max_attempts: Attempts for transient failures
            retry_base_delay: Base delay for exponential backoff
            circuit_breaker: Optional circuit breaker
            clock: Wall-clock time source for token expiry
        """
        self.developer_id = developer_id
        self.key_id = key_id
        self.signing_secret = signing_secret
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.clock = clock
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name="doordash")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._access_token: Optional[str] = None
        self._access_token_expiry = 0

        logger.info("doordash_adapter_initialized", base_url=self.base_url)

    @property
    def name(self) -> str:
        return "DoorDash Delivery"

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.EXTERNAL

    def get_access_token(self) -> str:
        """Get a valid JWT access token, reusing the cached one when possible."""
        now = int(self.clock())
        if self._access_token and self._access_token_expiry > now + TOKEN_REFRESH_MARGIN_SECONDS:
            return self._access_token

        expiry = now + TOKEN_LIFETIME_SECONDS
        payload = {
            "aud": "doordash",
            "iss": self.developer_id,
            "kid": self.key_id,
            "exp": expiry,
            "iat": now,
        }
        try:
            token = jwt.encode(
                payload,
                self.signing_secret,
                algorithm="HS256",
                headers={"dd-ver": "DD-JWT-V1"},
            )
        except jwt.PyJWTError as e:
            logger.error("doordash_token_generation_failed", error=str(e))
            raise ProviderError(f"Failed to generate DoorDash access token: {e}") from e

        self._access_token = token
        self._access_token_expiry = expiry
        logger.debug("doordash_token_refreshed", expires_at=expiry)
        return token

    async def _send(
        self, method: str, endpoint: str, data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Single authenticated request. Non-2xx answers raise ProviderAPIError."""
        headers = {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }
        response = await self._client.request(
            method, f"{self.base_url}{endpoint}", headers=headers, json=data
        )
        if response.is_error:
            raise ProviderAPIError("DoorDash", response.status_code, response.text)
        if not response.content:
            return {}
        return response.json()

    async def api_request(
        self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Make an authenticated API request to DoorDash.

        Transient failures are retried with exponential backoff; every attempt
        passes through the circuit breaker.

        Raises:
            ProviderAPIError: If DoorDash answers with an error status
            CircuitOpenError: If the circuit is open
            httpx.TransportError: If DoorDash cannot be reached
        """
        operation = f"{method} {endpoint.split('/')[1] if '/' in endpoint else endpoint}"
        start = time.perf_counter()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_base_delay, max=8),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "doordash_request_retry",
                            endpoint=endpoint,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    result = await self.circuit_breaker.call(self._send, method, endpoint, data)
        except (DeliveryError, httpx.HTTPError, ValueError) as e:
            error_type = "transient" if _is_transient(e) else "permanent"
            metrics.record_provider_api_error("doordash", error_type)
            metrics.record_provider_api_call(
                "doordash", operation, "error", time.perf_counter() - start
            )
            logger.error(
                "doordash_api_error",
                method=method,
                endpoint=endpoint,
                error_type=error_type,
                error=str(e),
            )
            raise

        metrics.record_provider_api_call(
            "doordash", operation, "success", time.perf_counter() - start
        )
        return result

    @staticmethod
    def format_address(address: Address) -> Dict[str, Any]:
        """Convert an Address to DoorDash format."""
        return {
            "street": address.street,
            "city": address.city,
            "state": address.state,
            "zip_code": address.postal_code,
            "country": address.country or "US",
            "unit_number": address.apartment,
            "business_name": address.business_name,
            "latitude": address.latitude,
            "longitude": address.longitude,
            "phone_number": address.phone,
            "special_instructions": address.instructions,
        }

    @staticmethod
    def format_order_items(items: Optional[List[OrderItem]]) -> List[Dict[str, Any]]:
        """Convert order items to DoorDash format."""
        if not items:
            return []
        return [
            _drop_none(
                {
                    "name": item.name,
                    "quantity": item.quantity,
                    "description": ", ".join(item.options) if item.options else None,
                    "external_id": item.id,
                }
            )
            for item in items
        ]

    async def get_quote(
        self, pickup: Address, delivery: Address, order_details: OrderDetails
    ) -> DeliveryQuote:
        now = utcnow()
        quote_request = _drop_none(
            {
                "external_delivery_id": f"quote-{int(self.clock() * 1000)}",
                "pickup_address": self.format_address(pickup),
                "dropoff_address": self.format_address(delivery),
                "pickup_phone_number": pickup.phone,
                "dropoff_phone_number": delivery.phone,
                "order_value": int(order_details.total_value * 100) if order_details.total_value else None,
                "items": self.format_order_items(order_details.items) or None,
                "pickup_business_name": pickup.business_name,
                "dropoff_business_name": delivery.business_name,
                "dropoff_requires_signature": order_details.requires_id,
                "contactless_dropoff": order_details.requires_contactless_delivery,
            }
        )

        try:
            response = await self.api_request("POST", "/quotes", quote_request)
            fee = Decimal(str(response.get("fee", 0))) / 100
            return DeliveryQuote(
                provider_id=0,  # assigned by the delivery service
                provider_name=self.name,
                fee=fee,
                customer_fee=fee,
                platform_fee=Decimal("0"),
                currency=response.get("currency", order_details.currency),
                estimated_pickup_time=parse_timestamp(
                    response.get("pickup_time_estimated"),
                    now + timedelta(minutes=DEFAULT_PICKUP_MINUTES),
                ),
                estimated_delivery_time=parse_timestamp(
                    response.get("dropoff_time_estimated"),
                    now + timedelta(minutes=DEFAULT_DROPOFF_MINUTES),
                ),
                distance=meters_to_miles(response.get("distance_in_meters")),
                distance_unit="miles",
                valid=True,
                valid_until=now + timedelta(minutes=QUOTE_VALID_MINUTES),
                provider_data={
                    "externalDeliveryId": response.get("external_delivery_id"),
                    "quoteId": response.get("quote_id"),
                },
            )
        except (DeliveryError, httpx.HTTPError, ValueError, ArithmeticError) as e:
            logger.error("doordash_quote_failed", error=str(e))
            return DeliveryQuote(
                provider_id=0,
                provider_name=self.name,
                fee=Decimal("0"),
                customer_fee=Decimal("0"),
                platform_fee=Decimal("0"),
                currency=order_details.currency,
                estimated_pickup_time=now + timedelta(minutes=DEFAULT_PICKUP_MINUTES),
                estimated_delivery_time=now + timedelta(minutes=DEFAULT_DROPOFF_MINUTES),
                distance=0,
                distance_unit="miles",
                valid=False,
                valid_until=now,
                errors=[str(e) or "Unknown error getting DoorDash quote"],
            )

    async def create_delivery(self, order: DeliveryOrderDetails) -> ExternalDeliveryOrder:
        pickup_address = self.format_address(order.business_address)
        dropoff_address = self.format_address(order.customer_address)
        external_delivery_id = (
            f"paysurity-{order.business_id}-{order.order_id}-{int(self.clock() * 1000)}"
        )

        delivery_request = _drop_none(
            {
                "external_delivery_id": external_delivery_id,
                "pickup_address": pickup_address,
                "dropoff_address": dropoff_address,
                "pickup_phone_number": pickup_address["phone_number"],
                "dropoff_phone_number": dropoff_address["phone_number"] or order.customer_phone,
                "dropoff_contact_given_name": order.customer_name,
                "order_value": int(order.order_details.total_value * 100),
                "items": self.format_order_items(order.order_details.items),
                "dropoff_instructions": order.special_instructions,
                "quote_id": order.provider_quote_id,
            }
        )

        logger.info(
            "doordash_creating_delivery",
            external_delivery_id=external_delivery_id,
            business_id=order.business_id,
        )

        try:
            response = await self.api_request("POST", "/deliveries", delivery_request)
            now = utcnow()
            return ExternalDeliveryOrder(
                external_order_id=response.get("external_delivery_id", external_delivery_id),
                status=map_doordash_status(response.get("status")),
                estimated_pickup_time=parse_timestamp(
                    response.get("pickup_time_estimated"),
                    now + timedelta(minutes=DEFAULT_PICKUP_MINUTES),
                ),
                estimated_delivery_time=parse_timestamp(
                    response.get("dropoff_time_estimated"),
                    now + timedelta(minutes=DEFAULT_DROPOFF_MINUTES),
                ),
                tracking_url=response.get("tracking_url"),
                provider_data={
                    "dasherId": response.get("dasher_id"),
                    "supportRefId": response.get("support_reference"),
                },
            )
        except (DeliveryError, httpx.HTTPError, ValueError) as e:
            logger.error("doordash_create_delivery_failed", error=str(e))
            raise ProviderError(f"Failed to create DoorDash delivery: {e}") from e

    async def cancel_delivery(self, external_order_id: str) -> bool:
        try:
            await self.api_request(
                "PUT",
                f"/deliveries/{external_order_id}/cancel",
                {"reason": "merchant_requested_cancellation"},
            )
        except (DeliveryError, httpx.HTTPError, ValueError) as e:
            logger.error(
                "doordash_cancel_failed",
                external_order_id=external_order_id,
                error=str(e),
            )
            return False
        return True

    async def get_delivery_status(self, external_order_id: str) -> DeliveryStatus:
        try:
            response = await self.api_request("GET", f"/deliveries/{external_order_id}")
        except (DeliveryError, httpx.HTTPError, ValueError) as e:
            logger.error(
                "doordash_status_failed",
                external_order_id=external_order_id,
                error=str(e),
            )
            raise ProviderError(f"Failed to get DoorDash delivery status: {e}") from e
        return map_doordash_status(response.get("delivery_status") or response.get("status"))

    async def parse_webhook_data(
        self, data: Dict[str, Any], headers: Mapping[str, str]
    ) -> WebhookUpdate:
        external_order_id = data.get("external_delivery_id")
        if not external_order_id:
            raise WebhookValidationError("Invalid webhook data: missing external_delivery_id")
        if isinstance(external_order_id, bool) or not isinstance(external_order_id, (str, int)):
            raise WebhookValidationError(
                "Invalid webhook data: external_delivery_id must be a string",
                received_type=type(external_order_id).__name__,
            )
        status = data.get("status")
        if status is not None and not isinstance(status, str):
            raise WebhookValidationError(
                "Invalid webhook data: status must be a string",
                received_type=type(status).__name__,
            )

        timestamp = parse_timestamp(data.get("timestamp"))
        driver_info = None
        dasher = data.get("dasher")
        if isinstance(dasher, dict):
            location = dasher.get("current_location")
            try:
                driver_info = DriverInfo(
                    id=dasher.get("id"),
                    name=dasher.get("name"),
                    phone=dasher.get("phone_number"),
                    location=DriverLocation(
                        latitude=location["lat"],
                        longitude=location["lng"],
                        timestamp=parse_timestamp(location.get("timestamp"), timestamp),
                    )
                    if isinstance(location, dict)
                    else None,
                )
            except (KeyError, ValidationError) as e:
                raise WebhookValidationError(f"Invalid dasher data: {e}") from e

        return WebhookUpdate(
            external_order_id=str(external_order_id),
            status=map_doordash_status(status),
            driver_info=driver_info,
            timestamp=timestamp,
            additional_data=data,
        )

    async def verify_webhook_signature(
        self, data: Any, headers: Mapping[str, str], secret: str
    ) -> bool:
        """
        Verify the JWT carried in the DoorDash signature header.

        When the token carries a ``body_sha256`` claim it must match the
        payload digest.
        """
        signature = lower_headers(headers).get(SIGNATURE_HEADER)
        if not signature:
            return False

        try:
            claims = jwt.decode(
                signature,
                secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as e:
            logger.warning("doordash_webhook_signature_invalid", error=str(e))
            return False

        expected_digest = claims.get("body_sha256")
        if expected_digest is None:
            return True
        actual_digest = hashlib.sha256(canonical_json(data)).hexdigest()
        return hmac.compare_digest(str(expected_digest), actual_digest)

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()
