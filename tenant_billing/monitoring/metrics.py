"""
Prometheus metrics for billing monitoring.

Tracks:
- Payment requests by provider and status
- Provider API calls, errors and latency
- Webhook events by provider, type and outcome
- Dunning transitions
- Overdue sweep runs
- Gateway selection failures
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_requests_total = Counter(
    "billing_payment_requests_total",
    "Total number of subscription payment requests",
    ["provider", "status"],
)

payment_amount = Histogram(
    "billing_payment_amount",
    "Invoice totals in major currency units",
    ["currency"],
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000, 10000, 50000),
)

no_gateway_total = Counter(
    "billing_no_gateway_total",
    "Payment requests with no configured gateway for the country",
    ["country"],
)

gateway_fallback_total = Counter(
    "billing_gateway_fallback_total",
    "Gateway selections that skipped the primary provider",
    ["country", "provider"],
)

# Provider API metrics
provider_api_requests_total = Counter(
    "billing_provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_errors_total = Counter(
    "billing_provider_api_errors_total",
    "Total provider API errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "billing_provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "billing_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_total = Counter(
    "billing_webhook_events_total",
    "Total webhook events handled",
    ["provider", "event_type", "status"],  # processed, ignored, duplicate, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "billing_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Dunning metrics
subscription_transitions_total = Counter(
    "billing_subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status", "trigger"],
)

tenant_suspensions_total = Counter(
    "billing_tenant_suspensions_total",
    "Tenants suspended for non-payment",
)

# Overdue sweep metrics
overdue_sweep_runs_total = Counter(
    "billing_overdue_sweep_runs_total",
    "Overdue sweep runs",
    ["status"],  # completed, skipped, failed
)

invoices_marked_overdue_total = Counter(
    "billing_invoices_marked_overdue_total",
    "Invoices marked overdue by the sweep",
)

overdue_sweep_duration_seconds = Histogram(
    "billing_overdue_sweep_duration_seconds",
    "Overdue sweep duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

overdue_sweep_last_run_timestamp = Gauge(
    "billing_overdue_sweep_last_run_timestamp",
    "Timestamp of last completed overdue sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_request(provider: str, status: str, currency: str, amount: float) -> None:
        """Record a subscription payment request."""
        payment_requests_total.labels(provider=provider, status=status).inc()
        payment_amount.labels(currency=currency).observe(amount)

    @staticmethod
    def record_no_gateway(country: str) -> None:
        """Record a country with no usable gateway."""
        no_gateway_total.labels(country=country).inc()

    @staticmethod
    def record_gateway_fallback(country: str, provider: str) -> None:
        """Record use of a fallback or default gateway."""
        gateway_fallback_total.labels(country=country, provider=provider).inc()

    @staticmethod
    def record_provider_api_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_api_error(provider: str, error_type: str) -> None:
        """Record provider API error."""
        provider_api_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event handling."""
        webhook_events_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_subscription_transition(from_status: str, to_status: str, trigger: str) -> None:
        """Record a dunning state transition."""
        subscription_transitions_total.labels(
            from_status=from_status, to_status=to_status, trigger=trigger
        ).inc()
        if to_status == "suspended" and from_status != "suspended":
            tenant_suspensions_total.inc()

    @staticmethod
    def record_overdue_sweep(status: str, marked_overdue: int = 0, duration_seconds: float = 0) -> None:
        """Record an overdue sweep run."""
        overdue_sweep_runs_total.labels(status=status).inc()
        if status == "success":
            invoices_marked_overdue_total.inc(marked_overdue)
            overdue_sweep_duration_seconds.observe(duration_seconds)
            overdue_sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
