"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CancelDeliveryRequest,
    CancelDeliveryResponse,
    QuoteListResponse,
    QuoteRequest,
    StatusUpdateRequest,
    WebhookResponse,
)

__all__ = [
    "app",
    "CancelDeliveryRequest",
    "CancelDeliveryResponse",
    "QuoteListResponse",
    "QuoteRequest",
    "StatusUpdateRequest",
    "WebhookResponse",
]
