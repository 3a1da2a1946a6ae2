"""
Prometheus metrics for settlement monitoring.

Tracks:
- Holds opened and approvals confirmed, by rail
- Settlement outcomes and durations
- Provider API calls and errors, per rail
- Webhook events
- Earnings recorded and payout requests
- Expiry sweep ticks and escalations
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Hold metrics
holds_opened_total = Counter(
    "seatpay_holds_opened_total",
    "Total number of holds opened",
    ["rail", "status"],  # status: created, duplicate, failed
)

approvals_confirmed_total = Counter(
    "seatpay_approvals_confirmed_total",
    "Total approval confirmations",
    ["rail", "status"],  # authorized, not_approved, failed, unavailable
)

hold_amount_cents = Histogram(
    "seatpay_hold_amount_cents",
    "Hold amounts in cents",
    buckets=(500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
)

# Settlement metrics
settlements_total = Counter(
    "seatpay_settlements_total",
    "Total settlement resolutions",
    ["decision", "outcome"],  # outcome: captured, voided, noop, failed, in_progress
)

settlement_duration_seconds = Histogram(
    "seatpay_settlement_duration_seconds",
    "Settlement resolution duration in seconds",
    ["decision"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

holds_escalated_total = Counter(
    "seatpay_holds_escalated_total",
    "Holds flagged for manual review",
    ["reason"],
)

refunds_total = Counter(
    "seatpay_refunds_total",
    "Total refunds issued",
    ["rail", "status"],
)

# Provider API metrics
provider_api_requests_total = Counter(
    "seatpay_provider_api_requests_total",
    "Total provider API requests",
    ["rail", "operation", "status"],
)

provider_api_errors_total = Counter(
    "seatpay_provider_api_errors_total",
    "Total provider API errors",
    ["rail", "error_type"],  # transient, permanent, rate_limit
)

provider_api_duration_seconds = Histogram(
    "seatpay_provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["rail", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

circuit_breaker_state = Gauge(
    "seatpay_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["rail"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "seatpay_webhook_events_received_total",
    "Total webhook events received",
    ["provider", "event_type"],
)

webhook_events_processed_total = Counter(
    "seatpay_webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "event_type", "status"],  # processed, failed, duplicate, ignored
)

webhook_processing_duration_seconds = Histogram(
    "seatpay_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Earnings metrics
earnings_recorded_total = Counter(
    "seatpay_earnings_recorded_total",
    "Total earnings recorded",
    ["currency"],
)

service_fee_cents_total = Counter(
    "seatpay_service_fee_cents_total",
    "Service fees collected in cents",
    ["currency"],
)

payout_requests_total = Counter(
    "seatpay_payout_requests_total",
    "Total payout requests",
    ["method", "status"],
)

# Sweeper metrics
sweep_ticks_total = Counter(
    "seatpay_sweep_ticks_total",
    "Total expiry sweep ticks",
    ["status"],
)

sweep_items_total = Counter(
    "seatpay_sweep_items_total",
    "Items handled by the expiry sweep",
    ["kind", "status"],  # kind: expired_hold, abandoned_order, webhook_replay
)

sweep_duration_seconds = Histogram(
    "seatpay_sweep_duration_seconds",
    "Expiry sweep tick duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

sweep_last_run_timestamp = Gauge(
    "seatpay_sweep_last_run_timestamp",
    "Timestamp of the last completed sweep tick",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "seatpay_outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "seatpay_outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_events_parked_total = Counter(
    "seatpay_outbox_events_parked_total",
    "Outbox events parked after repeated delivery failures",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "seatpay_outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_hold_opened(rail: str, status: str, amount_cents: int = 0) -> None:
        """Record an OpenHold outcome."""
        holds_opened_total.labels(rail=rail, status=status).inc()
        if amount_cents > 0:
            hold_amount_cents.observe(amount_cents)

    @staticmethod
    def record_approval(rail: str, status: str) -> None:
        """Record a ConfirmApproval outcome."""
        approvals_confirmed_total.labels(rail=rail, status=status).inc()

    @staticmethod
    def record_settlement(decision: str, outcome: str, duration_seconds: float) -> None:
        """Record a Resolve outcome."""
        settlements_total.labels(decision=decision, outcome=outcome).inc()
        settlement_duration_seconds.labels(decision=decision).observe(duration_seconds)

    @staticmethod
    def record_escalation(reason: str) -> None:
        """Record a hold escalated for manual review."""
        holds_escalated_total.labels(reason=reason).inc()

    @staticmethod
    def record_refund(rail: str, status: str) -> None:
        refunds_total.labels(rail=rail, status=status).inc()

    @staticmethod
    def record_provider_call(
        rail: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_api_requests_total.labels(rail=rail, operation=operation, status=status).inc()
        provider_api_duration_seconds.labels(rail=rail, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_provider_error(rail: str, error_type: str) -> None:
        """Record a provider API error."""
        provider_api_errors_total.labels(rail=rail, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(rail: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        circuit_breaker_state.labels(rail=rail).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_earning(currency: str, fee_cents: int) -> None:
        """Record a new earning and the fee it carried."""
        earnings_recorded_total.labels(currency=currency).inc()
        if fee_cents > 0:
            service_fee_cents_total.labels(currency=currency).inc(fee_cents)

    @staticmethod
    def record_payout_request(method: str, status: str) -> None:
        payout_requests_total.labels(method=method, status=status).inc()

    @staticmethod
    def record_sweep_tick(status: str, duration_seconds: float) -> None:
        """Record a sweep tick."""
        sweep_ticks_total.labels(status=status).inc()
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_sweep_item(kind: str, status: str) -> None:
        sweep_items_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_outbox_event_parked(event_type: str) -> None:
        outbox_events_parked_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
