"""
Delivery domain models.

Provider adapters translate their own wire formats into these shapes, so the
coordinator and the API only ever see one vocabulary for addresses, quotes,
deliveries and status updates.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

CENTS = Decimal("0.01")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Quantize a value to cents with half-up rounding."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStatus(str, Enum):
    """Lifecycle of a delivery across every provider."""

    PENDING = "pending"  # created, not yet accepted by the provider
    ACCEPTED = "accepted"
    ASSIGNED = "assigned"  # driver assigned
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def values(cls) -> List[str]:
        return [status.value for status in cls]


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
)


class ProviderType(str, Enum):
    """Whether a provider is run by the business or by a third party."""

    INTERNAL = "internal"
    EXTERNAL = "external"


class Address(BaseModel):
    """Pickup or dropoff location."""

    street: str
    city: str
    state: str
    postal_code: str
    country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    business_name: Optional[str] = None
    apartment: Optional[str] = None
    instructions: Optional[str] = None
    phone: Optional[str] = None


class OrderItem(BaseModel):
    """Line item handed to the courier."""

    id: Optional[str] = None
    name: str
    quantity: int = Field(..., gt=0)
    price: Optional[Decimal] = None
    options: List[str] = Field(default_factory=list)
    notes: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        """Item ids arrive as numbers from some POS systems."""
        return None if v is None else str(v)


class OrderDetails(BaseModel):
    """The order being delivered."""

    order_id: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    total_value: Decimal = Field(..., ge=0)
    currency: str = "USD"
    special_instructions: Optional[str] = None
    requires_id: bool = False
    requires_contactless_delivery: bool = False

    @field_validator("order_id", mode="before")
    @classmethod
    def coerce_order_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)

    @field_validator("total_value")
    @classmethod
    def quantize_total(cls, v: Decimal) -> Decimal:
        return to_money(v)


class DeliveryQuote(BaseModel):
    """A provider's price and timing for a delivery."""

    provider_id: int
    provider_name: str
    fee: Decimal
    customer_fee: Decimal
    platform_fee: Decimal
    currency: str = "USD"
    estimated_pickup_time: datetime
    estimated_delivery_time: datetime
    distance: float
    distance_unit: Literal["miles", "kilometers"] = "miles"
    valid: bool
    valid_until: datetime
    errors: List[str] = Field(default_factory=list)
    provider_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("fee", "customer_fee", "platform_fee")
    @classmethod
    def quantize_fees(cls, v: Decimal) -> Decimal:
        return to_money(v)


class DeliveryOrderDetails(BaseModel):
    """Everything a provider needs to dispatch a courier."""

    order_id: str
    business_id: int
    provider_id: int
    customer_name: str
    customer_phone: str
    customer_address: Address
    business_address: Address
    order_details: OrderDetails
    provider_fee: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    customer_fee: Decimal = Decimal("0")
    special_instructions: Optional[str] = None
    provider_quote_id: Optional[str] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def coerce_order_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("provider_fee", "platform_fee", "customer_fee")
    @classmethod
    def quantize_fees(cls, v: Decimal) -> Decimal:
        return to_money(v)


class DriverLocation(BaseModel):
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None


class DriverInfo(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[DriverLocation] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class ExternalDeliveryOrder(BaseModel):
    """A provider's view of a delivery it accepted."""

    external_order_id: str
    status: DeliveryStatus
    estimated_pickup_time: datetime
    estimated_delivery_time: datetime
    driver_id: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    driver_location: Optional[DriverLocation] = None
    tracking_url: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)


class WebhookUpdate(BaseModel):
    """A provider status push, normalized."""

    external_order_id: str
    status: DeliveryStatus
    driver_info: Optional[DriverInfo] = None
    timestamp: datetime
    additional_data: Optional[Dict[str, Any]] = None


class DeliveryProviderConfig(BaseModel):
    """Stored provider registration and credentials."""

    id: int
    name: str
    type: str  # "internal", "doordash", ...
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_key: Optional[str] = None
    is_active: bool = True
    settings: Dict[str, Any] = Field(default_factory=dict)


class BusinessDeliverySettings(BaseModel):
    """Per-business delivery policy."""

    business_id: int
    enabled_providers: List[int] = Field(default_factory=list)
    default_provider: Optional[int] = None
    auto_assign: bool = True
    delivery_radius: Optional[float] = Field(default=None, gt=0)  # miles
    delivery_fee: Optional[Decimal] = None
    minimum_order_amount: Optional[Decimal] = None
    free_delivery_threshold: Optional[Decimal] = None
    estimated_delivery_time: Optional[int] = None  # minutes
    is_active: bool = True
    settings: Dict[str, Any] = Field(default_factory=dict)


class DeliveryOrder(BaseModel):
    """Stored delivery record."""

    model_config = ConfigDict(validate_assignment=True)

    id: int
    business_id: int
    order_id: str
    provider_id: int
    external_order_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    pickup_address: Optional[Address] = None
    delivery_address: Optional[Address] = None
    items: List[OrderItem] = Field(default_factory=list)
    delivery_fee: Decimal = Decimal("0")
    customer_fee: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    tracking_url: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    last_driver_location: Optional[DriverLocation] = None
    last_location_update: Optional[datetime] = None
    special_instructions: Optional[str] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryStatusUpdate(BaseModel):
    """One entry in a delivery's status history."""

    id: int
    delivery_order_id: int
    status: DeliveryStatus
    timestamp: datetime
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class CreatedDelivery(BaseModel):
    """Summary returned after a delivery is dispatched."""

    id: int
    external_order_id: str
    provider_id: int
    provider_name: str
    status: DeliveryStatus
    estimated_pickup_time: datetime
    estimated_delivery_time: datetime
    tracking_url: Optional[str] = None


class WebhookResult(BaseModel):
    delivery_id: int
    old_status: DeliveryStatus
    new_status: DeliveryStatus
    driver_info: Optional[DriverInfo] = None
    duplicate: bool = False


class StatusChange(BaseModel):
    old_status: DeliveryStatus
    new_status: DeliveryStatus
