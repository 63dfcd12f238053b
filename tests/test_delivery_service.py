"""
Tests for the delivery service coordinator.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping
from unittest.mock import AsyncMock

import pytest

from paysurity_delivery.config import Settings
from paysurity_delivery.core.delivery_service import DeliveryService
from paysurity_delivery.core.exceptions import (
    DeliveryNotFoundError,
    DeliveryServiceError,
    ProviderError,
    ProviderNotFoundError,
    WebhookError,
    WebhookSignatureError,
    WebhookValidationError,
)
from paysurity_delivery.core.models import (
    Address,
    BusinessDeliverySettings,
    DeliveryOrderDetails,
    DeliveryProviderConfig,
    DeliveryQuote,
    DeliveryStatus,
    ExternalDeliveryOrder,
    OrderDetails,
    ProviderType,
    WebhookUpdate,
    utcnow,
)
from paysurity_delivery.core.repository import DeliveryRepository
from paysurity_delivery.providers.base import DeliveryProviderAdapter
from paysurity_delivery.providers.doordash import DoorDashAdapter
from paysurity_delivery.providers.internal import SIGNATURE_HEADER, sign_payload

from .conftest import INTERNAL_WEBHOOK_SECRET


class StubCourierAdapter(DeliveryProviderAdapter):
    """Third-party courier double with a fixed fee."""

    def __init__(self, fee: str = "5.00", status: DeliveryStatus = DeliveryStatus.ACCEPTED):
        self.fee = Decimal(fee)
        self.status = status
        self.cancel_result = True
        self.fail_quotes = False

    @property
    def name(self) -> str:
        return "Stub Courier"

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.EXTERNAL

    async def get_quote(
        self, pickup: Address, delivery: Address, order_details: OrderDetails
    ) -> DeliveryQuote:
        if self.fail_quotes:
            raise ProviderError("courier offline")
        now = utcnow()
        return DeliveryQuote(
            provider_id=0,
            provider_name=self.name,
            fee=self.fee,
            customer_fee=self.fee,
            platform_fee=Decimal("0"),
            estimated_pickup_time=now + timedelta(minutes=10),
            estimated_delivery_time=now + timedelta(minutes=30),
            distance=2.5,
            valid=True,
            valid_until=now + timedelta(minutes=5),
        )

    async def create_delivery(self, order: DeliveryOrderDetails) -> ExternalDeliveryOrder:
        now = utcnow()
        return ExternalDeliveryOrder(
            external_order_id=f"stub-{order.order_id}",
            status=self.status,
            estimated_pickup_time=now + timedelta(minutes=10),
            estimated_delivery_time=now + timedelta(minutes=30),
            tracking_url="https://courier.example/track",
        )

    async def cancel_delivery(self, external_order_id: str) -> bool:
        return self.cancel_result

    async def get_delivery_status(self, external_order_id: str) -> DeliveryStatus:
        return self.status

    async def parse_webhook_data(
        self, data: Dict[str, Any], headers: Mapping[str, str]
    ) -> WebhookUpdate:
        return WebhookUpdate(
            external_order_id=data["id"],
            status=DeliveryStatus(data["status"]),
            timestamp=utcnow(),
        )

    async def verify_webhook_signature(
        self, data: Any, headers: Mapping[str, str], secret: str
    ) -> bool:
        return headers.get("x-stub-signature") == secret


def internal_webhook(
    external_order_id: str, status: str, **extra: Any
) -> Dict[str, Any]:
    payload = {"externalOrderId": external_order_id, "status": status}
    payload.update(extra)
    return payload


def signed(payload: Dict[str, Any]) -> Dict[str, str]:
    return {SIGNATURE_HEADER: sign_payload(payload, INTERNAL_WEBHOOK_SECRET)}


class TestProviderRegistry:
    """Test suite for provider registration and initialization."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_internal_provider_always_registered(
        self, delivery_service: DeliveryService
    ) -> None:
        await delivery_service.initialize()

        assert delivery_service.list_providers() == [
            {"id": 1, "name": "Restaurant Delivery", "type": "internal", "provider_key": "internal"}
        ]
        assert delivery_service.get_provider(1) is not None
        assert delivery_service.get_provider(2) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_loads_doordash_config(
        self, repository: DeliveryRepository, test_settings: Settings
    ) -> None:
        """Active DoorDash configs with credentials become adapters."""
        await repository.save_delivery_provider(
            DeliveryProviderConfig(
                id=2,
                name="DoorDash",
                type="doordash",
                api_key="key-456",
                api_secret="secret-" + "x" * 40,
                webhook_key="webhook-" + "y" * 40,
                settings={"developer_id": "dev-123"},
            )
        )
        await repository.save_delivery_provider(
            DeliveryProviderConfig(id=3, name="Old DoorDash", type="doordash", is_active=False)
        )
        await repository.save_delivery_provider(
            DeliveryProviderConfig(id=4, name="Mystery", type="carrier_pigeon")
        )
        service = DeliveryService(repository=repository, settings=test_settings)

        await service.initialize()
        await service.initialize()

        assert isinstance(service.get_provider(2), DoorDashAdapter)
        assert service.get_provider(3) is None
        assert service.get_provider(4) is None
        assert [p["provider_key"] for p in service.list_providers()] == ["internal", "doordash"]
        await service.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_doordash_without_credentials_is_skipped(
        self, repository: DeliveryRepository, test_settings: Settings
    ) -> None:
        await repository.save_delivery_provider(
            DeliveryProviderConfig(id=2, name="DoorDash", type="doordash", api_key="key-456")
        )
        service = DeliveryService(repository=repository, settings=test_settings)

        await service.initialize()

        assert service.get_provider(2) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_doordash_from_settings(
        self, repository: DeliveryRepository, test_settings: Settings
    ) -> None:
        """Credentials in settings register DoorDash as provider 2."""
        settings = test_settings.model_copy(
            update={
                "doordash_developer_id": "dev-123",
                "doordash_key_id": "key-456",
                "doordash_signing_secret": "secret-" + "x" * 40,
            }
        )
        service = DeliveryService(repository=repository, settings=settings)

        await service.initialize()

        assert isinstance(service.get_provider(2), DoorDashAdapter)
        await service.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_failure(self, test_settings: Settings) -> None:
        repository = AsyncMock(spec=DeliveryRepository)
        repository.get_all_delivery_providers.side_effect = RuntimeError("store down")
        service = DeliveryService(repository=repository, settings=test_settings)

        with pytest.raises(DeliveryServiceError, match="Failed to initialize"):
            await service.initialize()


class TestQuotes:
    """Test suite for quote fan-out and pricing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quotes_sorted_and_marked_up(
        self,
        delivery_service: DeliveryService,
        pickup_address: Address,
        delivery_address: Address,
        order_details: OrderDetails,
    ) -> None:
        """External fees carry the platform markup; cheapest valid quote first."""
        delivery_service.register_provider(2, StubCourierAdapter(fee="5.00"), "stub")

        quotes = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details
        )

        assert [q.provider_id for q in quotes] == [1, 2]
        internal, courier = quotes
        assert internal.customer_fee == Decimal("3.00")
        assert internal.platform_fee == Decimal("0.00")
        assert courier.fee == Decimal("5.00")
        assert courier.platform_fee == Decimal("0.50")
        assert courier.customer_fee == Decimal("5.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_quotes_sort_last(
        self,
        delivery_service: DeliveryService,
        pickup_address: Address,
        delivery_address: Address,
        order_details: OrderDetails,
    ) -> None:
        cheap = StubCourierAdapter(fee="1.00")
        delivery_service.register_provider(2, cheap, "stub")
        await delivery_service.save_business_settings(
            BusinessDeliverySettings(business_id=1, delivery_radius=2.0)
        )

        quotes = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details, business_id=1
        )

        assert [q.provider_id for q in quotes] == [1, 2]
        assert quotes[0].valid is True
        assert quotes[1].valid is False
        assert "exceeds radius" in quotes[1].errors[0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_provider_is_omitted(
        self,
        delivery_service: DeliveryService,
        pickup_address: Address,
        delivery_address: Address,
        order_details: OrderDetails,
    ) -> None:
        courier = StubCourierAdapter()
        courier.fail_quotes = True
        delivery_service.register_provider(2, courier, "stub")

        quotes = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details
        )

        assert [q.provider_id for q in quotes] == [1]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_settings_policy(
        self,
        delivery_service: DeliveryService,
        pickup_address: Address,
        delivery_address: Address,
        order_details: OrderDetails,
    ) -> None:
        """Enabled providers, minimum order and free delivery apply per business."""
        delivery_service.register_provider(2, StubCourierAdapter(), "stub")
        await delivery_service.save_business_settings(
            BusinessDeliverySettings(
                business_id=7,
                enabled_providers=[2],
                minimum_order_amount=Decimal("50.00"),
            )
        )
        await delivery_service.save_business_settings(
            BusinessDeliverySettings(business_id=8, free_delivery_threshold=Decimal("40.00"))
        )

        restricted = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details, business_id=7
        )
        assert [q.provider_id for q in restricted] == [2]
        assert restricted[0].valid is False
        assert "below minimum" in restricted[0].errors[0]

        free = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details, business_id=8
        )
        assert all(q.valid for q in free)
        assert all(q.customer_fee == Decimal("0") for q in free)
        assert free[1].platform_fee == Decimal("0.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_business_settings_ignored(
        self,
        delivery_service: DeliveryService,
        pickup_address: Address,
        delivery_address: Address,
        order_details: OrderDetails,
    ) -> None:
        await delivery_service.save_business_settings(
            BusinessDeliverySettings(business_id=9, delivery_radius=0.1, is_active=False)
        )

        quotes = await delivery_service.get_delivery_quotes(
            pickup_address, delivery_address, order_details, business_id=9
        )

        assert quotes[0].valid is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settings_reference_unknown_provider(
        self, delivery_service: DeliveryService
    ) -> None:
        with pytest.raises(ProviderNotFoundError):
            await delivery_service.save_business_settings(
                BusinessDeliverySettings(business_id=1, enabled_providers=[1, 5])
            )


class TestDeliveryLifecycle:
    """Test suite for creating, tracking and cancelling deliveries."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_delivery_order(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Created deliveries are stored with an initial history entry."""
        created = await delivery_service.create_delivery_order(delivery_order_details)

        assert created.id == 1
        assert created.provider_name == "Restaurant Delivery"
        assert created.status == DeliveryStatus.PENDING
        assert created.external_order_id.startswith("INTERNAL-")

        stored = await delivery_service.repository.get_delivery_order(created.id)
        assert stored.customer_name == "Test Customer"
        assert stored.delivery_fee == Decimal("3.00")
        assert [i.name for i in stored.items] == ["Burger", "Fries"]

        history = await delivery_service.get_status_history(created.id)
        assert [h.status for h in history] == [DeliveryStatus.PENDING]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_with_unknown_provider(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        order = delivery_order_details.model_copy(update={"provider_id": 42})
        with pytest.raises(ProviderNotFoundError):
            await delivery_service.create_delivery_order(order)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_provider_failure(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        courier = StubCourierAdapter()
        courier.create_delivery = AsyncMock(side_effect=ProviderError("no dashers"))
        delivery_service.register_provider(2, courier, "stub")
        order = delivery_order_details.model_copy(update={"provider_id": 2})

        with pytest.raises(DeliveryServiceError, match="Failed to create delivery order"):
            await delivery_service.create_delivery_order(order)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_delivery_order_refreshes_status(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Provider-side progress is stored and logged in history."""
        courier = StubCourierAdapter(status=DeliveryStatus.ACCEPTED)
        delivery_service.register_provider(2, courier, "stub")
        order = delivery_order_details.model_copy(update={"provider_id": 2})
        created = await delivery_service.create_delivery_order(order)

        courier.status = DeliveryStatus.PICKED_UP
        delivery = await delivery_service.get_delivery_order(created.id)

        assert delivery.status == DeliveryStatus.PICKED_UP
        history = await delivery_service.get_status_history(created.id)
        assert history[-1].notes == "Status changed from accepted to picked_up by provider"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_delivery_order_keeps_status_on_provider_error(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        courier = StubCourierAdapter()
        delivery_service.register_provider(2, courier, "stub")
        created = await delivery_service.create_delivery_order(
            delivery_order_details.model_copy(update={"provider_id": 2})
        )
        courier.get_delivery_status = AsyncMock(side_effect=ProviderError("timeout"))

        delivery = await delivery_service.get_delivery_order(created.id)

        assert delivery.status == DeliveryStatus.ACCEPTED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown_delivery(self, delivery_service: DeliveryService) -> None:
        assert await delivery_service.get_delivery_order(404) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_delivery(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        created = await delivery_service.create_delivery_order(delivery_order_details)

        assert await delivery_service.cancel_delivery(created.id, "Customer changed mind")

        delivery = await delivery_service.get_delivery_order(created.id)
        assert delivery.status == DeliveryStatus.CANCELLED
        history = await delivery_service.get_status_history(created.id)
        assert history[-1].status == DeliveryStatus.CANCELLED
        assert history[-1].notes == "Customer changed mind"

        assert await delivery_service.cancel_delivery(created.id) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_refusals(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Unknown, delivered and provider-refused deliveries stay as they are."""
        assert await delivery_service.cancel_delivery(404) is False

        delivered = await delivery_service.create_delivery_order(delivery_order_details)
        await delivery_service.update_delivery_status(delivered.id, DeliveryStatus.DELIVERED)
        assert await delivery_service.cancel_delivery(delivered.id) is False

        courier = StubCourierAdapter()
        courier.cancel_result = False
        delivery_service.register_provider(2, courier, "stub")
        refused = await delivery_service.create_delivery_order(
            delivery_order_details.model_copy(update={"provider_id": 2})
        )
        assert await delivery_service.cancel_delivery(refused.id) is False
        stored = await delivery_service.repository.get_delivery_order(refused.id)
        assert stored.status == DeliveryStatus.ACCEPTED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_delivery_orders(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        first = await delivery_service.create_delivery_order(delivery_order_details)
        second = await delivery_service.create_delivery_order(
            delivery_order_details.model_copy(update={"order_id": "test-order-456"})
        )
        await delivery_service.cancel_delivery(first.id)

        orders = await delivery_service.get_business_delivery_orders(1)
        pending = await delivery_service.get_business_delivery_orders(
            1, status=DeliveryStatus.PENDING
        )

        assert {o.id for o in orders} == {first.id, second.id}
        assert [o.id for o in pending] == [second.id]


class TestManualStatusUpdates:
    """Test suite for manual status changes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_delivery_status(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Manual updates stick even after a provider refresh."""
        created = await delivery_service.create_delivery_order(delivery_order_details)
        delivered_at = datetime(2024, 1, 1, 13, 0, tzinfo=timezone.utc)

        change = await delivery_service.update_delivery_status(
            created.id, DeliveryStatus.DELIVERED, delivered_at
        )

        assert change.old_status == DeliveryStatus.PENDING
        assert change.new_status == DeliveryStatus.DELIVERED
        delivery = await delivery_service.get_delivery_order(created.id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.actual_delivery_time == delivered_at
        history = await delivery_service.get_status_history(created.id)
        assert history[-1].notes == "Status updated manually"
        assert len(history) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_status_is_noop(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        created = await delivery_service.create_delivery_order(delivery_order_details)

        change = await delivery_service.update_delivery_status(
            created.id, DeliveryStatus.PENDING
        )

        assert change.old_status == change.new_status == DeliveryStatus.PENDING
        assert len(await delivery_service.get_status_history(created.id)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_unknown_delivery(self, delivery_service: DeliveryService) -> None:
        with pytest.raises(DeliveryNotFoundError):
            await delivery_service.update_delivery_status(404, DeliveryStatus.DELIVERED)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_of_unknown_delivery(self, delivery_service: DeliveryService) -> None:
        with pytest.raises(DeliveryNotFoundError):
            await delivery_service.get_status_history(404)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_failure_does_not_fail_update(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
        mocker: Any,
    ) -> None:
        created = await delivery_service.create_delivery_order(delivery_order_details)
        mocker.patch.object(
            delivery_service.repository,
            "create_delivery_status_history",
            AsyncMock(side_effect=RuntimeError("disk full")),
        )

        change = await delivery_service.update_delivery_status(
            created.id, DeliveryStatus.ASSIGNED
        )

        assert change.new_status == DeliveryStatus.ASSIGNED


class TestWebhooks:
    """Test suite for webhook processing."""

    async def _create(
        self, service: DeliveryService, order: DeliveryOrderDetails
    ) -> str:
        created = await service.create_delivery_order(order)
        return created.external_order_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_internal_webhook_applies_update(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Driver details, status and history are applied from the payload."""
        ext_id = await self._create(delivery_service, delivery_order_details)
        payload = internal_webhook(
            ext_id,
            "picked_up",
            timestamp="2024-01-01T12:20:00Z",
            driver={
                "name": "Alex",
                "phone": "555-0102",
                "location": {"latitude": 34.05, "longitude": -118.25},
            },
        )

        result = await delivery_service.process_webhook("internal", payload, signed(payload))

        assert result.delivery_id == 1
        assert result.old_status == DeliveryStatus.PENDING
        assert result.new_status == DeliveryStatus.PICKED_UP
        assert result.duplicate is False

        delivery = await delivery_service.get_delivery_order(1)
        assert delivery.status == DeliveryStatus.PICKED_UP
        assert delivery.driver_name == "Alex"
        assert delivery.last_driver_location.latitude == 34.05
        assert delivery.actual_pickup_time == datetime(2024, 1, 1, 12, 20, tzinfo=timezone.utc)
        assert len(delivery.provider_data["webhookEvents"]) == 1
        history = await delivery_service.get_status_history(1)
        assert history[-1].notes == "Status updated by internal webhook"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delivered_webhook_sets_delivery_time(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        ext_id = await self._create(delivery_service, delivery_order_details)
        payload = internal_webhook(ext_id, "delivered", timestamp="2024-01-01T12:45:00Z")

        await delivery_service.process_webhook("internal", payload, signed(payload))

        delivery = await delivery_service.repository.get_delivery_order(1)
        assert delivery.actual_delivery_time == datetime(2024, 1, 1, 12, 45, tzinfo=timezone.utc)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_webhook_not_reapplied(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        ext_id = await self._create(delivery_service, delivery_order_details)
        payload = internal_webhook(ext_id, "assigned", timestamp="2024-01-01T12:05:00Z")

        await delivery_service.process_webhook("internal", payload, signed(payload))
        replay = await delivery_service.process_webhook("internal", payload, signed(payload))

        assert replay.duplicate is True
        assert replay.new_status == DeliveryStatus.ASSIGNED
        history = await delivery_service.get_status_history(1)
        assert len(history) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        ext_id = await self._create(delivery_service, delivery_order_details)
        payload = internal_webhook(ext_id, "delivered")

        with pytest.raises(WebhookSignatureError):
            await delivery_service.process_webhook(
                "internal", payload, {SIGNATURE_HEADER: "deadbeef"}
            )
        with pytest.raises(WebhookSignatureError):
            await delivery_service.process_webhook("internal", payload, {})

        stored = await delivery_service.repository.get_delivery_order(1)
        assert stored.status == DeliveryStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_webhook_accepted_without_secret(
        self,
        repository: DeliveryRepository,
        test_settings: Settings,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        service = DeliveryService(
            repository=repository,
            settings=test_settings.model_copy(update={"internal_webhook_secret": None}),
        )
        ext_id = await self._create(service, delivery_order_details)

        result = await service.process_webhook(
            "internal", internal_webhook(ext_id, "accepted"), {}
        )

        assert result.new_status == DeliveryStatus.ACCEPTED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_provider_type(self, delivery_service: DeliveryService) -> None:
        with pytest.raises(WebhookError, match="No active provider"):
            await delivery_service.process_webhook("ubereats", {}, {})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_delivery_ignored(self, delivery_service: DeliveryService) -> None:
        payload = internal_webhook("INTERNAL-unknown", "delivered")
        assert await delivery_service.process_webhook("internal", payload, signed(payload)) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_payload(self, delivery_service: DeliveryService) -> None:
        payload = {"status": "delivered"}
        with pytest.raises(WebhookValidationError):
            await delivery_service.process_webhook("internal", payload, signed(payload))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_external_webhook_secret(
        self,
        delivery_service: DeliveryService,
        delivery_order_details: DeliveryOrderDetails,
    ) -> None:
        """Each provider type verifies against its own secret."""
        delivery_service.register_provider(2, StubCourierAdapter(), "stub")
        delivery_service.set_webhook_secret("stub", "stub-secret")
        await delivery_service.create_delivery_order(
            delivery_order_details.model_copy(update={"provider_id": 2})
        )
        payload = {"id": "stub-test-order-123", "status": "in_transit"}

        with pytest.raises(WebhookSignatureError):
            await delivery_service.process_webhook("stub", payload, {"x-stub-signature": "no"})
        result = await delivery_service.process_webhook(
            "stub", payload, {"x-stub-signature": "stub-secret"}
        )

        assert result.old_status == DeliveryStatus.ACCEPTED
        assert result.new_status == DeliveryStatus.IN_TRANSIT
