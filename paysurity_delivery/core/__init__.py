"""Delivery domain: models, errors, storage and the provider coordinator."""
from .delivery_service import DeliveryService
from .exceptions import (
    CircuitOpenError,
    DeliveryError,
    DeliveryNotFoundError,
    DeliveryServiceError,
    DeliveryValidationError,
    ProviderAPIError,
    ProviderError,
    ProviderNotFoundError,
    WebhookError,
    WebhookSignatureError,
    WebhookValidationError,
)
from .repository import DeliveryRepository

__all__ = [
    "CircuitOpenError",
    "DeliveryError",
    "DeliveryNotFoundError",
    "DeliveryRepository",
    "DeliveryService",
    "DeliveryServiceError",
    "DeliveryValidationError",
    "ProviderAPIError",
    "ProviderError",
    "ProviderNotFoundError",
    "WebhookError",
    "WebhookSignatureError",
    "WebhookValidationError",
]
