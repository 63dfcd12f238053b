"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio

from paysurity_delivery.config import Settings
from paysurity_delivery.core.delivery_service import DeliveryService
from paysurity_delivery.core.models import (
    Address,
    DeliveryOrderDetails,
    OrderDetails,
    OrderItem,
)
from paysurity_delivery.core.repository import DeliveryRepository

INTERNAL_WEBHOOK_SECRET = "internal-webhook-secret-for-tests-0123456789"


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests with no I/O")
    config.addinivalue_line("markers", "integration: tests that exercise several components")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        doordash_developer_id=None,
        doordash_key_id=None,
        doordash_signing_secret=None,
        doordash_webhook_secret=None,
        internal_webhook_secret=INTERNAL_WEBHOOK_SECRET,
        internal_platform_fee_percent=Decimal("0"),
        external_platform_fee_percent=Decimal("10"),
        provider_retry_max_attempts=3,
        provider_retry_base_delay=0,
        circuit_breaker_failure_threshold=5,
        app_name="paysurity-delivery-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def repository() -> DeliveryRepository:
    return DeliveryRepository()


@pytest_asyncio.fixture
async def delivery_service(
    repository: DeliveryRepository, test_settings: Settings
) -> AsyncGenerator[DeliveryService, Any]:
    """Delivery service backed by a fresh in-memory repository."""
    service = DeliveryService(repository=repository, settings=test_settings)
    yield service
    await service.close()


@pytest.fixture
def pickup_address() -> Address:
    """Restaurant in downtown Los Angeles."""
    return Address(
        street="123 Main St",
        city="Los Angeles",
        state="CA",
        postal_code="90001",
        country="US",
        business_name="Test Restaurant",
        phone="+12135550100",
        latitude=34.052235,
        longitude=-118.243683,
    )


@pytest.fixture
def delivery_address() -> Address:
    """Customer a little under a mile from the restaurant."""
    return Address(
        street="456 Oak Ave",
        city="Los Angeles",
        state="CA",
        postal_code="90002",
        country="US",
        phone="+12135550199",
        latitude=34.048213,
        longitude=-118.259583,
    )


@pytest.fixture
def order_details() -> OrderDetails:
    return OrderDetails(
        order_id="test-order-123",
        items=[
            OrderItem(id=1, name="Burger", quantity=2, price=Decimal("12.99")),
            OrderItem(id=2, name="Fries", quantity=1, price=Decimal("4.99"), options=["Large"]),
        ],
        total_value=Decimal("45.99"),
    )


@pytest.fixture
def delivery_order_details(
    pickup_address: Address, delivery_address: Address, order_details: OrderDetails
) -> DeliveryOrderDetails:
    """Internal delivery request for business 1."""
    return DeliveryOrderDetails(
        order_id="test-order-123",
        business_id=1,
        provider_id=1,
        customer_name="Test Customer",
        customer_phone="+12135550199",
        customer_address=delivery_address,
        business_address=pickup_address,
        order_details=order_details,
        provider_fee=Decimal("3.00"),
        platform_fee=Decimal("0"),
        customer_fee=Decimal("3.00"),
        special_instructions="Leave at the door",
    )
