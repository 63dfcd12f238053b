"""
Delivery service.

Coordinates between delivery providers, handling:
- Provider registration and selection
- Quote fan-out, pricing and comparison
- Order creation and tracking
- Status updates and webhooks
"""
import asyncio
import hashlib
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import structlog

from paysurity_delivery.config import Settings, get_settings
from paysurity_delivery.core.exceptions import (
    DeliveryError,
    DeliveryNotFoundError,
    DeliveryServiceError,
    ProviderNotFoundError,
    WebhookError,
    WebhookSignatureError,
)
from paysurity_delivery.core.models import (
    Address,
    BusinessDeliverySettings,
    CreatedDelivery,
    DeliveryOrder,
    DeliveryOrderDetails,
    DeliveryProviderConfig,
    DeliveryQuote,
    DeliveryStatus,
    DeliveryStatusUpdate,
    OrderDetails,
    ProviderType,
    StatusChange,
    WebhookResult,
    WebhookUpdate,
    to_money,
    utcnow,
)
from paysurity_delivery.core.repository import DeliveryRepository
from paysurity_delivery.monitoring.metrics import metrics
from paysurity_delivery.providers.base import DeliveryProviderAdapter, canonical_json
from paysurity_delivery.providers.circuit_breaker import CircuitBreaker
from paysurity_delivery.providers.doordash import DoorDashAdapter
from paysurity_delivery.providers.internal import INTERNAL_PROVIDER_ID, InternalDeliveryAdapter

logger = structlog.get_logger(__name__)

DOORDASH_PROVIDER_ID = 2
UNCANCELLABLE_STATUSES = frozenset({DeliveryStatus.CANCELLED, DeliveryStatus.DELIVERED})


class DeliveryService:
    """
    Main delivery service that coordinates between delivery providers.

    The internal staff-delivery provider is always registered as provider 1;
    external providers are loaded from stored provider configs on first use.
    """

    def __init__(
        self,
        repository: Optional[DeliveryRepository] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize delivery service.

        Args:
            repository: Optional delivery store
            settings: Optional settings (defaults to environment settings)
        """
        self.settings = settings or get_settings()
        self.repository = repository or DeliveryRepository()
        self._providers: Dict[int, DeliveryProviderAdapter] = {}
        self._provider_types: Dict[int, str] = {}
        self._webhook_secrets: Dict[str, str] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()

        self.register_provider(INTERNAL_PROVIDER_ID, InternalDeliveryAdapter(), "internal")
        if self.settings.internal_webhook_secret:
            self._webhook_secrets["internal"] = self.settings.internal_webhook_secret

    async def initialize(self) -> None:
        """
        Load provider configurations from the repository.

        Safe to call repeatedly; only the first call does any work.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                configs = await self.repository.get_all_delivery_providers()
            except Exception as e:
                logger.error("delivery_service_initialization_failed", error=str(e))
                raise DeliveryServiceError(f"Failed to initialize delivery service: {e}") from e

            for config in configs:
                if not config.is_active:
                    continue
                self._setup_provider(config)

            if (
                self.settings.doordash_configured
                and self._find_provider_id_by_type("doordash") is None
            ):
                self._setup_provider(
                    DeliveryProviderConfig(
                        id=DOORDASH_PROVIDER_ID,
                        name="DoorDash",
                        type="doordash",
                        api_key=self.settings.doordash_key_id,
                        api_secret=self.settings.doordash_signing_secret,
                        webhook_key=self.settings.doordash_webhook_secret,
                    )
                )

            self._initialized = True
            logger.info("delivery_service_initialized", provider_count=len(self._providers))

    def _setup_provider(self, config: DeliveryProviderConfig) -> None:
        if config.type == "internal":
            if config.webhook_key:
                self._webhook_secrets["internal"] = config.webhook_key
            return

        if config.type == "doordash":
            developer_id = config.settings.get("developer_id") or self.settings.doordash_developer_id
            if not (config.api_key and config.api_secret and developer_id):
                logger.warning(
                    "delivery_provider_missing_credentials",
                    provider_id=config.id,
                    provider_type=config.type,
                )
                return
            adapter = DoorDashAdapter(
                developer_id=developer_id,
                key_id=config.api_key,
                signing_secret=config.api_secret,
                base_url=config.settings.get("base_url", self.settings.doordash_base_url),
                timeout=self.settings.provider_http_timeout,
                max_attempts=self.settings.provider_retry_max_attempts,
                retry_base_delay=self.settings.provider_retry_base_delay,
                circuit_breaker=CircuitBreaker(
                    name="doordash",
                    failure_threshold=self.settings.circuit_breaker_failure_threshold,
                    timeout=self.settings.circuit_breaker_timeout,
                ),
            )
            self.register_provider(config.id, adapter, config.type)
            webhook_secret = config.webhook_key or self.settings.doordash_webhook_secret
            if webhook_secret:
                self._webhook_secrets[config.type] = webhook_secret
            return

        # Add more providers as needed (e.g., UberEats, Grubhub)
        logger.warning(
            "delivery_provider_unknown_type",
            provider_id=config.id,
            provider_type=config.type,
        )

    def register_provider(
        self,
        provider_id: int,
        adapter: DeliveryProviderAdapter,
        provider_type: Optional[str] = None,
    ) -> None:
        """Register a delivery provider under an id and a webhook type key."""
        self._providers[provider_id] = adapter
        self._provider_types[provider_id] = provider_type or adapter.provider_type.value
        logger.info(
            "delivery_provider_registered",
            provider_id=provider_id,
            provider_name=adapter.name,
            provider_type=self._provider_types[provider_id],
        )

    def set_webhook_secret(self, provider_type: str, secret: str) -> None:
        self._webhook_secrets[provider_type] = secret

    def get_provider(self, provider_id: int) -> Optional[DeliveryProviderAdapter]:
        return self._providers.get(provider_id)

    def get_all_providers(self) -> List[DeliveryProviderAdapter]:
        return list(self._providers.values())

    def list_providers(self) -> List[Dict[str, Any]]:
        """Id, name and type of every registered provider."""
        return [
            {
                "id": provider_id,
                "name": adapter.name,
                "type": adapter.provider_type.value,
                "provider_key": self._provider_types[provider_id],
            }
            for provider_id, adapter in sorted(self._providers.items())
        ]

    def _platform_fee_percent(self, adapter: DeliveryProviderAdapter) -> Decimal:
        if adapter.provider_type == ProviderType.INTERNAL:
            return self.settings.internal_platform_fee_percent
        return self.settings.external_platform_fee_percent

    def _price_quote(
        self,
        provider_id: int,
        adapter: DeliveryProviderAdapter,
        quote: DeliveryQuote,
        order_details: OrderDetails,
        business_settings: Optional[BusinessDeliverySettings],
    ) -> DeliveryQuote:
        """Apply platform markup and business delivery policy to a raw quote."""
        platform_fee = to_money(quote.fee * self._platform_fee_percent(adapter) / 100)
        customer_fee = to_money(quote.fee + platform_fee)
        errors = list(quote.errors)
        valid = quote.valid

        if quote.valid and business_settings is not None:
            radius = business_settings.delivery_radius
            if radius is not None and quote.distance > radius:
                valid = False
                errors.append(
                    f"Delivery distance {quote.distance} miles exceeds radius of {radius} miles"
                )
            minimum = business_settings.minimum_order_amount
            if minimum is not None and order_details.total_value < minimum:
                valid = False
                errors.append(f"Order total {order_details.total_value} is below minimum {minimum}")
            threshold = business_settings.free_delivery_threshold
            if threshold is not None and order_details.total_value >= threshold:
                customer_fee = Decimal("0")

        return quote.model_copy(
            update={
                "provider_id": provider_id,
                "platform_fee": platform_fee if quote.valid else Decimal("0"),
                "customer_fee": customer_fee if quote.valid else Decimal("0"),
                "valid": valid,
                "errors": errors,
            }
        )

    async def get_delivery_quotes(
        self,
        pickup: Address,
        delivery: Address,
        order_details: OrderDetails,
        business_id: Optional[int] = None,
    ) -> List[DeliveryQuote]:
        """
        Get delivery quotes from all candidate providers concurrently.

        Providers that raise are left out. Valid quotes sort first, cheapest
        customer fee first.
        """
        await self.initialize()
        start = time.perf_counter()

        business_settings = None
        if business_id is not None:
            business_settings = await self.repository.get_business_settings(business_id)
            if business_settings is not None and not business_settings.is_active:
                business_settings = None

        candidates = dict(self._providers)
        if business_settings is not None and business_settings.enabled_providers:
            enabled = set(business_settings.enabled_providers)
            candidates = {pid: a for pid, a in candidates.items() if pid in enabled}

        provider_ids = list(candidates)
        results = await asyncio.gather(
            *(
                candidates[pid].get_quote(pickup, delivery, order_details)
                for pid in provider_ids
            ),
            return_exceptions=True,
        )

        quotes: List[DeliveryQuote] = []
        for provider_id, result in zip(provider_ids, results):
            adapter = candidates[provider_id]
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "delivery_quote_failed",
                    provider_id=provider_id,
                    provider_name=adapter.name,
                    error=str(result),
                )
                continue
            quote = self._price_quote(
                provider_id, adapter, result, order_details, business_settings
            )
            metrics.record_quote(adapter.name, quote.valid)
            quotes.append(quote)

        quotes.sort(key=lambda q: (not q.valid, q.customer_fee))
        metrics.record_quote_request(time.perf_counter() - start)
        logger.info(
            "delivery_quotes_collected",
            business_id=business_id,
            quote_count=len(quotes),
            valid_count=sum(1 for q in quotes if q.valid),
        )
        return quotes

    async def create_delivery_order(self, order: DeliveryOrderDetails) -> CreatedDelivery:
        """
        Dispatch a delivery with the chosen provider and store it.

        Raises:
            ProviderNotFoundError: If the provider is not registered
            DeliveryServiceError: If the provider fails to create the delivery
        """
        await self.initialize()

        provider = self._providers.get(order.provider_id)
        if provider is None:
            raise ProviderNotFoundError(order.provider_id)

        try:
            external = await provider.create_delivery(order)
            delivery = await self.repository.create_delivery_order(
                business_id=order.business_id,
                order_id=order.order_id,
                provider_id=order.provider_id,
                external_order_id=external.external_order_id,
                status=external.status,
                customer_name=order.customer_name,
                customer_phone=order.customer_phone,
                pickup_address=order.business_address,
                delivery_address=order.customer_address,
                items=order.order_details.items,
                delivery_fee=order.provider_fee,
                platform_fee=order.platform_fee,
                customer_fee=order.customer_fee,
                estimated_pickup_time=external.estimated_pickup_time,
                estimated_delivery_time=external.estimated_delivery_time,
                special_instructions=order.special_instructions,
                driver_name=external.driver_name,
                driver_phone=external.driver_phone,
                tracking_url=external.tracking_url,
                provider_data=external.provider_data,
            )
        except DeliveryError as e:
            logger.error(
                "delivery_order_creation_failed",
                provider_id=order.provider_id,
                order_id=order.order_id,
                error=str(e),
            )
            raise DeliveryServiceError(f"Failed to create delivery order: {e}") from e

        await self._record_status_change(delivery.id, external.status, utcnow())
        metrics.record_delivery_created(provider.name)
        logger.info(
            "delivery_order_created",
            delivery_id=delivery.id,
            external_order_id=external.external_order_id,
            provider_id=order.provider_id,
            status=external.status.value,
        )

        return CreatedDelivery(
            id=delivery.id,
            external_order_id=external.external_order_id,
            provider_id=order.provider_id,
            provider_name=provider.name,
            status=external.status,
            estimated_pickup_time=external.estimated_pickup_time,
            estimated_delivery_time=external.estimated_delivery_time,
            tracking_url=external.tracking_url,
        )

    async def cancel_delivery(self, delivery_id: int, reason: Optional[str] = None) -> bool:
        """Cancel a delivery. Returns False when it cannot be cancelled."""
        await self.initialize()

        delivery = await self.repository.get_delivery_order(delivery_id)
        if delivery is None:
            logger.warning("delivery_cancel_not_found", delivery_id=delivery_id)
            return False

        if delivery.status in UNCANCELLABLE_STATUSES:
            logger.info(
                "delivery_cancel_refused",
                delivery_id=delivery_id,
                status=delivery.status.value,
            )
            return False

        provider = self._providers.get(delivery.provider_id)
        if provider is None:
            logger.error(
                "delivery_cancel_provider_missing",
                delivery_id=delivery_id,
                provider_id=delivery.provider_id,
            )
            return False

        try:
            cancelled = await provider.cancel_delivery(delivery.external_order_id)
        except DeliveryError as e:
            logger.error("delivery_cancel_failed", delivery_id=delivery_id, error=str(e))
            return False

        if cancelled:
            await self.repository.update_delivery_order_status(
                delivery_id, DeliveryStatus.CANCELLED
            )
            await self._record_status_change(
                delivery_id, DeliveryStatus.CANCELLED, utcnow(), reason
            )
            metrics.record_delivery_cancelled(provider.name)
            logger.info("delivery_cancelled", delivery_id=delivery_id, reason=reason)

        return cancelled

    async def get_delivery_order(self, delivery_id: int) -> Optional[DeliveryOrder]:
        """
        Get a delivery order, refreshing its status from the provider.

        A provider that cannot report status leaves the stored status as is.
        """
        await self.initialize()

        delivery = await self.repository.get_delivery_order(delivery_id)
        if delivery is None:
            return None

        provider = self._providers.get(delivery.provider_id)
        if provider is None:
            return delivery

        try:
            current_status = await provider.get_delivery_status(delivery.external_order_id)
        except DeliveryError as e:
            logger.warning(
                "delivery_status_refresh_failed",
                delivery_id=delivery_id,
                error=str(e),
            )
            return delivery

        if current_status != delivery.status:
            old_status = delivery.status
            delivery = await self.repository.update_delivery_order_status(
                delivery_id, current_status
            )
            await self._record_status_change(
                delivery_id,
                current_status,
                utcnow(),
                f"Status changed from {old_status.value} to {current_status.value} by provider",
            )
            metrics.record_status_change(current_status.value, "provider")

        return delivery

    async def get_business_delivery_orders(
        self,
        business_id: int,
        status: Optional[DeliveryStatus] = None,
        order_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[DeliveryOrder]:
        await self.initialize()
        return await self.repository.get_business_delivery_orders(
            business_id,
            status=status,
            order_id=order_id,
            limit=limit,
            offset=offset,
            start_date=start_date,
            end_date=end_date,
        )

    def _find_provider_id_by_type(self, provider_type: str) -> Optional[int]:
        for provider_id, key in sorted(self._provider_types.items()):
            if key == provider_type:
                return provider_id
        return None

    async def process_webhook(
        self,
        provider_type: str,
        data: Dict[str, Any],
        headers: Mapping[str, str],
    ) -> Optional[WebhookResult]:
        """
        Process a status webhook from a delivery provider.

        Returns None when the delivery is unknown.

        Raises:
            WebhookError: If no provider handles the type or the payload is invalid
            WebhookSignatureError: If the signature does not verify
        """
        await self.initialize()

        provider_id = self._find_provider_id_by_type(provider_type)
        if provider_id is None:
            raise WebhookError(f"No active provider found for type: {provider_type}")
        provider = self._providers[provider_id]

        secret = self._webhook_secrets.get(provider_type)
        if secret:
            if not await provider.verify_webhook_signature(data, headers, secret):
                logger.warning("webhook_signature_rejected", provider_type=provider_type)
                raise WebhookSignatureError("Invalid webhook signature")
        else:
            logger.warning("webhook_signature_not_configured", provider_type=provider_type)

        update = await provider.parse_webhook_data(data, headers)

        delivery = await self.repository.get_delivery_order_by_external_id(
            update.external_order_id
        )
        if delivery is None:
            logger.warning(
                "webhook_delivery_not_found",
                provider_type=provider_type,
                external_order_id=update.external_order_id,
            )
            return None

        digest = hashlib.sha256(
            provider_type.encode("utf-8") + b":" + canonical_json(data)
        ).hexdigest()
        if not await self.repository.mark_webhook_processed(digest):
            logger.info(
                "webhook_duplicate_ignored",
                delivery_id=delivery.id,
                provider_type=provider_type,
            )
            return WebhookResult(
                delivery_id=delivery.id,
                old_status=delivery.status,
                new_status=delivery.status,
                driver_info=update.driver_info,
                duplicate=True,
            )

        try:
            result = await self._apply_webhook_update(delivery, update, provider_type)
        except Exception:
            await self.repository.forget_webhook(digest)
            raise
        await provider.acknowledge_status(delivery.external_order_id, update.status)
        return result

    async def _apply_webhook_update(
        self, delivery: DeliveryOrder, update: WebhookUpdate, provider_type: str
    ) -> WebhookResult:
        old_status = delivery.status
        new_status = update.status
        updates: Dict[str, Any] = {}

        if update.driver_info is not None:
            if update.driver_info.name:
                updates["driver_name"] = update.driver_info.name
            if update.driver_info.phone:
                updates["driver_phone"] = update.driver_info.phone
            if update.driver_info.location is not None:
                updates["last_driver_location"] = update.driver_info.location
                updates["last_location_update"] = utcnow()

        if old_status != new_status:
            updates["status"] = new_status
            if new_status == DeliveryStatus.PICKED_UP and delivery.actual_pickup_time is None:
                updates["actual_pickup_time"] = update.timestamp
            if new_status == DeliveryStatus.DELIVERED:
                updates["actual_delivery_time"] = update.timestamp

        if update.additional_data:
            provider_data = dict(delivery.provider_data)
            events = list(provider_data.get("webhookEvents", []))
            events.append(
                {
                    "timestamp": update.timestamp.isoformat(),
                    "status": new_status.value,
                    "data": update.additional_data,
                }
            )
            provider_data["webhookEvents"] = events
            updates["provider_data"] = provider_data

        if updates:
            await self.repository.update_delivery_order(delivery.id, **updates)

        if old_status != new_status:
            await self._record_status_change(
                delivery.id,
                new_status,
                update.timestamp,
                f"Status updated by {provider_type} webhook",
            )
            metrics.record_status_change(new_status.value, "webhook")

        logger.info(
            "webhook_processed",
            delivery_id=delivery.id,
            provider_type=provider_type,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return WebhookResult(
            delivery_id=delivery.id,
            old_status=old_status,
            new_status=new_status,
            driver_info=update.driver_info,
        )

    async def update_delivery_status(
        self,
        delivery_id: int,
        new_status: DeliveryStatus,
        timestamp: Optional[datetime] = None,
    ) -> StatusChange:
        """
        Update delivery status manually.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist
        """
        await self.initialize()
        timestamp = timestamp or utcnow()
        new_status = DeliveryStatus(new_status)

        delivery = await self.repository.get_delivery_order(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)

        old_status = delivery.status
        if old_status == new_status:
            return StatusChange(old_status=old_status, new_status=new_status)

        updates: Dict[str, Any] = {"status": new_status}
        if new_status == DeliveryStatus.DELIVERED:
            updates["actual_delivery_time"] = timestamp
        await self.repository.update_delivery_order(delivery_id, **updates)
        await self._record_status_change(
            delivery_id, new_status, timestamp, "Status updated manually"
        )
        metrics.record_status_change(new_status.value, "manual")

        provider = self._providers.get(delivery.provider_id)
        if provider is not None:
            await provider.acknowledge_status(delivery.external_order_id, new_status)

        logger.info(
            "delivery_status_updated",
            delivery_id=delivery_id,
            old_status=old_status.value,
            new_status=new_status.value,
        )
        return StatusChange(old_status=old_status, new_status=new_status)

    async def get_status_history(self, delivery_id: int) -> List[DeliveryStatusUpdate]:
        """
        Status history of a delivery, oldest first.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist
        """
        if await self.repository.get_delivery_order(delivery_id) is None:
            raise DeliveryNotFoundError(delivery_id)
        return await self.repository.get_delivery_status_history(delivery_id)

    async def get_business_settings(self, business_id: int) -> Optional[BusinessDeliverySettings]:
        return await self.repository.get_business_settings(business_id)

    async def save_business_settings(
        self, settings: BusinessDeliverySettings
    ) -> BusinessDeliverySettings:
        """
        Store a business's delivery policy.

        Raises:
            ProviderNotFoundError: If an enabled or default provider is not registered
        """
        await self.initialize()
        referenced = list(settings.enabled_providers)
        if settings.default_provider is not None:
            referenced.append(settings.default_provider)
        for provider_id in referenced:
            if provider_id not in self._providers:
                raise ProviderNotFoundError(provider_id)
        saved = await self.repository.save_business_settings(settings)
        logger.info("business_delivery_settings_saved", business_id=settings.business_id)
        return saved

    async def _record_status_change(
        self,
        delivery_id: int,
        status: DeliveryStatus,
        timestamp: datetime,
        notes: Optional[str] = None,
    ) -> None:
        """Append to status history. Failures are logged, never raised."""
        try:
            await self.repository.create_delivery_status_history(
                delivery_id, status, timestamp, notes
            )
        except Exception as e:
            logger.error(
                "delivery_status_history_failed",
                delivery_id=delivery_id,
                status=status.value,
                error=str(e),
            )

    async def close(self) -> None:
        """Close provider network resources."""
        for adapter in self._providers.values():
            await adapter.close()
