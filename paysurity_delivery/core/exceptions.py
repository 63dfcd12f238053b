"""
Exception classes for delivery dispatch.

Every error carries a stable error code and the HTTP status the API answers
with, so routes translate failures without inspecting messages.
"""
from typing import Any, Dict, Optional


class DeliveryError(Exception):
    """Base exception for all delivery errors."""

    error_code = "delivery_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class DeliveryServiceError(DeliveryError):
    """Raised when a coordinator operation fails."""

    error_code = "delivery_service_error"


class DeliveryValidationError(DeliveryError):
    """Raised when a request cannot be dispatched as given."""

    error_code = "delivery_validation_error"
    http_status = 400


class DeliveryNotFoundError(DeliveryError):
    """Raised when a delivery order does not exist."""

    error_code = "delivery_not_found"
    http_status = 404

    def __init__(self, delivery_id: int):
        super().__init__(
            f"Delivery order with ID {delivery_id} not found", delivery_id=delivery_id
        )
        self.delivery_id = delivery_id


class ProviderNotFoundError(DeliveryError):
    """Raised when no adapter is registered for a provider id."""

    error_code = "provider_not_found"
    http_status = 404

    def __init__(self, provider_id: int):
        super().__init__(
            f"Delivery provider with ID {provider_id} not found", provider_id=provider_id
        )
        self.provider_id = provider_id


class ProviderError(DeliveryError):
    """Raised when a provider cannot complete an operation."""

    error_code = "provider_error"
    http_status = 502


class ProviderAPIError(ProviderError):
    """Raised when a provider API answers with a non-success status."""

    error_code = "provider_api_error"

    def __init__(self, provider: str, status_code: int, body: str):
        super().__init__(
            f"{provider} API error ({status_code}): {body}",
            status_code=status_code,
        )
        self.provider = provider
        self.status_code = status_code
        self.body = body

    @property
    def is_transient(self) -> bool:
        """Rate limits and server errors are worth retrying."""
        return self.status_code == 429 or self.status_code >= 500


class CircuitOpenError(ProviderError):
    """Raised when calls are short-circuited after repeated failures."""

    error_code = "provider_circuit_open"
    http_status = 503

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        super().__init__(
            f"Circuit breaker is open for {provider}", retry_after=retry_after
        )
        self.provider = provider
        self.retry_after = retry_after


class WebhookError(DeliveryError):
    """Raised when a webhook cannot be accepted."""

    error_code = "webhook_error"
    http_status = 400


class WebhookSignatureError(WebhookError):
    error_code = "webhook_invalid_signature"
    http_status = 401


class WebhookValidationError(WebhookError):
    """Raised when a webhook payload is malformed."""

    error_code = "webhook_invalid_payload"
