"""
Health checks for liveness and readiness probes.

Checks:
- Delivery service initialization
- Provider circuit breaker state
"""
from typing import Any, Dict

import structlog

from paysurity_delivery.core.delivery_service import DeliveryService
from paysurity_delivery.core.exceptions import DeliveryError

logger = structlog.get_logger(__name__)


class HealthCheck:
    """Health check service for the delivery coordinator and its providers."""

    def __init__(self, delivery_service: DeliveryService) -> None:
        self.delivery_service = delivery_service

    def check_providers(self) -> Dict[str, Any]:
        """
        Report each provider, flagging any whose circuit is open.

        Returns:
            Dict[str, Any]: Provider health keyed by provider id
        """
        checks: Dict[str, Any] = {}
        for provider_id, adapter in enumerate_providers(self.delivery_service):
            breaker = getattr(adapter, "circuit_breaker", None)
            state = breaker.state if breaker is not None else "closed"
            checks[str(provider_id)] = {
                "name": adapter.name,
                "status": "unhealthy" if state == "open" else "healthy",
                "circuit_state": state,
            }
        return checks

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        try:
            await self.delivery_service.initialize()
        except DeliveryError as e:
            logger.error("delivery_service_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "checks": {"delivery_service": {"status": "unhealthy", "error": str(e)}},
            }

        providers = self.check_providers()
        # The internal provider keeps deliveries flowing even when external circuits are open
        all_healthy = any(check["status"] == "healthy" for check in providers.values())
        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": {"providers": providers},
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }


def enumerate_providers(delivery_service: DeliveryService):
    for entry in delivery_service.list_providers():
        yield entry["id"], delivery_service.get_provider(entry["id"])
