"""Delivery provider adapters."""
from .base import DeliveryProviderAdapter
from .circuit_breaker import CircuitBreaker
from .doordash import DoorDashAdapter
from .internal import INTERNAL_PROVIDER_ID, InternalDeliveryAdapter

__all__ = [
    "CircuitBreaker",
    "DeliveryProviderAdapter",
    "DoorDashAdapter",
    "INTERNAL_PROVIDER_ID",
    "InternalDeliveryAdapter",
]
