"""
In-memory storage for providers, business settings, delivery orders and
status history.

Records are copied on the way in and out so callers mutate state only through
the repository methods.
"""
import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from paysurity_delivery.core.exceptions import DeliveryNotFoundError
from paysurity_delivery.core.models import (
    BusinessDeliverySettings,
    DeliveryOrder,
    DeliveryProviderConfig,
    DeliveryStatus,
    DeliveryStatusUpdate,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    # Order timestamps are aware; naive filter bounds are read as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DeliveryRepository:
    """Async in-memory delivery store guarded by a single lock."""

    def __init__(self, max_webhook_digests: int = 10_000) -> None:
        self._lock = asyncio.Lock()
        self._providers: Dict[int, DeliveryProviderConfig] = {}
        self._business_settings: Dict[int, BusinessDeliverySettings] = {}
        self._orders: Dict[int, DeliveryOrder] = {}
        self._external_index: Dict[str, int] = {}
        self._history: Dict[int, List[DeliveryStatusUpdate]] = {}
        self._webhook_digests: "OrderedDict[str, None]" = OrderedDict()
        self._max_webhook_digests = max_webhook_digests
        self._next_order_id = 1
        self._next_history_id = 1

    # Providers

    async def get_all_delivery_providers(self) -> List[DeliveryProviderConfig]:
        async with self._lock:
            return [p.model_copy(deep=True) for p in sorted(self._providers.values(), key=lambda p: p.id)]

    async def save_delivery_provider(self, config: DeliveryProviderConfig) -> DeliveryProviderConfig:
        async with self._lock:
            self._providers[config.id] = config.model_copy(deep=True)
            logger.info("delivery_provider_saved", provider_id=config.id, provider_type=config.type)
            return config

    # Business settings

    async def get_business_settings(self, business_id: int) -> Optional[BusinessDeliverySettings]:
        async with self._lock:
            settings = self._business_settings.get(business_id)
            return settings.model_copy(deep=True) if settings else None

    async def save_business_settings(
        self, settings: BusinessDeliverySettings
    ) -> BusinessDeliverySettings:
        async with self._lock:
            self._business_settings[settings.business_id] = settings.model_copy(deep=True)
            return settings

    # Delivery orders

    async def create_delivery_order(self, **fields: Any) -> DeliveryOrder:
        async with self._lock:
            order = DeliveryOrder(id=self._next_order_id, **fields)
            self._next_order_id += 1
            self._orders[order.id] = order
            self._external_index[order.external_order_id] = order.id
            return order.model_copy(deep=True)

    async def get_delivery_order(self, delivery_id: int) -> Optional[DeliveryOrder]:
        async with self._lock:
            order = self._orders.get(delivery_id)
            return order.model_copy(deep=True) if order else None

    async def get_delivery_order_by_external_id(
        self, external_order_id: str
    ) -> Optional[DeliveryOrder]:
        async with self._lock:
            delivery_id = self._external_index.get(external_order_id)
            if delivery_id is None:
                return None
            return self._orders[delivery_id].model_copy(deep=True)

    async def update_delivery_order(self, delivery_id: int, **updates: Any) -> DeliveryOrder:
        async with self._lock:
            order = self._orders.get(delivery_id)
            if order is None:
                raise DeliveryNotFoundError(delivery_id)
            updates.setdefault("updated_at", utcnow())
            for field_name, value in updates.items():
                setattr(order, field_name, value)
            return order.model_copy(deep=True)

    async def update_delivery_order_status(
        self, delivery_id: int, status: DeliveryStatus
    ) -> DeliveryOrder:
        return await self.update_delivery_order(delivery_id, status=status)

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
        """Orders for one business, newest first."""
        async with self._lock:
            orders = [o for o in self._orders.values() if o.business_id == business_id]
        if status is not None:
            orders = [o for o in orders if o.status == status]
        if order_id is not None:
            orders = [o for o in orders if o.order_id == str(order_id)]
        if start_date is not None:
            start_date = _as_utc(start_date)
            orders = [o for o in orders if o.created_at >= start_date]
        if end_date is not None:
            end_date = _as_utc(end_date)
            orders = [o for o in orders if o.created_at <= end_date]

        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        end = offset + limit if limit is not None else None
        return [o.model_copy(deep=True) for o in orders[offset:end]]

    # Status history

    async def create_delivery_status_history(
        self,
        delivery_id: int,
        status: DeliveryStatus,
        timestamp: datetime,
        notes: Optional[str] = None,
    ) -> DeliveryStatusUpdate:
        async with self._lock:
            if delivery_id not in self._orders:
                raise DeliveryNotFoundError(delivery_id)
            entry = DeliveryStatusUpdate(
                id=self._next_history_id,
                delivery_order_id=delivery_id,
                status=status,
                timestamp=timestamp,
                notes=notes,
            )
            self._next_history_id += 1
            self._history.setdefault(delivery_id, []).append(entry)
            return entry

    async def get_delivery_status_history(self, delivery_id: int) -> List[DeliveryStatusUpdate]:
        async with self._lock:
            return [e.model_copy() for e in self._history.get(delivery_id, [])]

    # Webhook deduplication

    async def mark_webhook_processed(self, digest: str) -> bool:
        """
        Remember a webhook payload digest.

        Returns False when the digest was already seen. The oldest digests are
        evicted once the window is full.
        """
        async with self._lock:
            if digest in self._webhook_digests:
                return False
            self._webhook_digests[digest] = None
            while len(self._webhook_digests) > self._max_webhook_digests:
                self._webhook_digests.popitem(last=False)
            return True

    async def forget_webhook(self, digest: str) -> None:
        async with self._lock:
            self._webhook_digests.pop(digest, None)
