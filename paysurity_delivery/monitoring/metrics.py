"""
Prometheus metrics for delivery dispatch monitoring.

Tracks:
- Quote requests and quote outcomes per provider
- Deliveries created and cancelled per provider
- Provider API calls, errors and latency
- Circuit breaker state
- Webhook events
"""
from prometheus_client import Counter, Gauge, Histogram

# Quote metrics
delivery_quote_requests_total = Counter(
    "delivery_quote_requests_total",
    "Total number of quote fan-out requests",
)

delivery_quotes_total = Counter(
    "delivery_quotes_total",
    "Quotes returned by providers",
    ["provider", "valid"],
)

delivery_quote_duration_seconds = Histogram(
    "delivery_quote_duration_seconds",
    "Quote fan-out duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Delivery lifecycle metrics
deliveries_created_total = Counter(
    "deliveries_created_total",
    "Total deliveries created",
    ["provider"],
)

deliveries_cancelled_total = Counter(
    "deliveries_cancelled_total",
    "Total deliveries cancelled",
    ["provider"],
)

delivery_status_changes_total = Counter(
    "delivery_status_changes_total",
    "Total delivery status transitions",
    ["status", "source"],  # source: provider, webhook, manual
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "delivery_webhook_events_received_total",
    "Total delivery webhook events received",
    ["provider_type"],
)

webhook_events_processed_total = Counter(
    "delivery_webhook_events_processed_total",
    "Total delivery webhook events processed",
    ["provider_type", "status"],  # processed, ignored, duplicate, rejected
)

webhook_processing_duration_seconds = Histogram(
    "delivery_webhook_processing_duration_seconds",
    "Delivery webhook processing duration in seconds",
    ["provider_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_quote_request(duration_seconds: float) -> None:
        """Record a quote fan-out."""
        delivery_quote_requests_total.inc()
        delivery_quote_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_quote(provider: str, valid: bool) -> None:
        """Record a single provider quote."""
        delivery_quotes_total.labels(provider=provider, valid=str(valid).lower()).inc()

    @staticmethod
    def record_delivery_created(provider: str) -> None:
        """Record a created delivery."""
        deliveries_created_total.labels(provider=provider).inc()

    @staticmethod
    def record_delivery_cancelled(provider: str) -> None:
        """Record a cancelled delivery."""
        deliveries_cancelled_total.labels(provider=provider).inc()

    @staticmethod
    def record_status_change(status: str, source: str) -> None:
        """Record a delivery status transition."""
        delivery_status_changes_total.labels(status=status, source=source).inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_provider_api_error(provider: str, error_type: str) -> None:
        """Record a provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(provider_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider_type=provider_type).inc()
        webhook_events_processed_total.labels(
            provider_type=provider_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider_type=provider_type).observe(
            duration_seconds
        )


# Export singleton instance
metrics = MetricsCollector()
