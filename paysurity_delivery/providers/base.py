"""
Delivery provider adapter interface.

All delivery providers implement this interface so the coordinator can quote,
dispatch, cancel and track deliveries without knowing which backend runs them.
"""
import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from paysurity_delivery.core.models import (
    Address,
    DeliveryOrderDetails,
    DeliveryQuote,
    DeliveryStatus,
    ExternalDeliveryOrder,
    OrderDetails,
    ProviderType,
    WebhookUpdate,
    utcnow,
)


def canonical_json(data: Any) -> bytes:
    """Stable serialization used for webhook signatures and deduplication."""
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8")
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class DeliveryProviderAdapter(ABC):
    """Common interface for one delivery backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Display name of the provider."""

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Internal or external provider."""

    @abstractmethod
    async def get_quote(
        self, pickup: Address, delivery: Address, order_details: OrderDetails
    ) -> DeliveryQuote:
        """Get a delivery quote from the provider."""

    @abstractmethod
    async def create_delivery(self, order: DeliveryOrderDetails) -> ExternalDeliveryOrder:
        """Create a delivery with the provider."""

    @abstractmethod
    async def cancel_delivery(self, external_order_id: str) -> bool:
        """Cancel a delivery. Returns False when the provider refuses."""

    @abstractmethod
    async def get_delivery_status(self, external_order_id: str) -> DeliveryStatus:
        """Get the current status of a delivery."""

    @abstractmethod
    async def parse_webhook_data(
        self, data: Dict[str, Any], headers: Mapping[str, str]
    ) -> WebhookUpdate:
        """Normalize a webhook payload from the provider."""

    @abstractmethod
    async def verify_webhook_signature(
        self, data: Any, headers: Mapping[str, str], secret: str
    ) -> bool:
        """Verify a webhook signature from the provider."""

    async def acknowledge_status(self, external_order_id: str, status: DeliveryStatus) -> None:
        """
        Accept a status recorded outside the provider API.

        Called after manual updates and webhooks so adapters that track state
        themselves stay in step with the stored order.
        """

    async def close(self) -> None:
        """Release any network resources held by the adapter."""


_datetime_adapter = TypeAdapter(datetime)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    Parse an ISO-8601 string or unix timestamp from a provider payload.

    Naive values are taken as UTC. Falls back to ``default`` (or now) when the
    value is missing or unparseable.
    """
    fallback = default or utcnow()
    if value in (None, ""):
        return fallback
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
