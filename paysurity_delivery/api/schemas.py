"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from paysurity_delivery.core.models import (
    Address,
    DeliveryQuote,
    DeliveryStatus,
    DriverInfo,
    OrderDetails,
)


class QuoteRequest(BaseModel):
    """Request schema for quoting a delivery across providers."""

    pickup: Address = Field(..., description="Pickup location (the business)")
    delivery: Address = Field(..., description="Dropoff location (the customer)")
    order_details: OrderDetails = Field(..., description="Order being delivered")
    business_id: Optional[int] = Field(
        default=None, description="Apply this business's delivery settings"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "pickup": {
                        "street": "123 Main St",
                        "city": "Los Angeles",
                        "state": "CA",
                        "postal_code": "90001",
                        "business_name": "Test Restaurant",
                        "latitude": 34.052235,
                        "longitude": -118.243683,
                    },
                    "delivery": {
                        "street": "456 Oak Ave",
                        "city": "Los Angeles",
                        "state": "CA",
                        "postal_code": "90002",
                        "latitude": 34.048213,
                        "longitude": -118.259583,
                    },
                    "order_details": {
                        "total_value": "45.99",
                        "items": [{"name": "Burger", "quantity": 2, "price": "12.99"}],
                    },
                }
            ]
        }
    }


class QuoteListResponse(BaseModel):
    """Response schema for quotes, best first."""

    quotes: List[DeliveryQuote] = Field(..., description="Quotes, valid and cheapest first")


class ProviderResponse(BaseModel):
    id: int = Field(..., description="Provider ID")
    name: str = Field(..., description="Provider display name")
    type: str = Field(..., description="internal or external")
    provider_key: str = Field(..., description="Webhook path key (e.g. doordash)")


class CancelDeliveryRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Cancellation reason")


class CancelDeliveryResponse(BaseModel):
    delivery_id: int = Field(..., description="Delivery order ID")
    cancelled: bool = Field(..., description="Whether the provider cancelled the delivery")


class StatusUpdateRequest(BaseModel):
    """Request schema for a manual status update."""

    status: DeliveryStatus = Field(..., description="New delivery status")
    timestamp: Optional[datetime] = Field(default=None, description="When the change happened")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, duplicate or ignored")
    delivery_id: Optional[int] = Field(default=None, description="Delivery order ID")
    old_status: Optional[DeliveryStatus] = Field(default=None)
    new_status: Optional[DeliveryStatus] = Field(default=None)
    driver_info: Optional[DriverInfo] = Field(default=None)
    message: Optional[str] = Field(default=None, description="Status message")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
