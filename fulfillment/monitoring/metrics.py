"""
Prometheus metrics for order fulfillment monitoring.

Tracks:
- Orders placed by outcome
- Reservation attempts, retries and state transitions
- Gateway charge outcomes and latency
- Payment idempotency hits
- Compensation task outcomes
- Sweeper runs and expired reservations
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_placed_total = Counter(
    "orders_placed_total",
    "Total number of place-order requests by outcome",
    ["outcome"],  # completed, failed, insufficient_stock, rejected
)

order_placement_duration_seconds = Histogram(
    "order_placement_duration_seconds",
    "End-to-end place-order duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Inventory metrics
stock_reservation_attempts_total = Counter(
    "stock_reservation_attempts_total",
    "Reserve-stock transaction attempts",
    ["result"],  # reserved, insufficient
)

stock_reservation_transitions_total = Counter(
    "stock_reservation_transitions_total",
    "Reservation state transitions",
    ["status", "applied"],  # applied: true, noop
)

# Gateway metrics
gateway_charges_total = Counter(
    "gateway_charges_total",
    "Total gateway charge calls",
    ["method", "status"],  # success, failed
)

gateway_charge_duration_seconds = Histogram(
    "gateway_charge_duration_seconds",
    "Gateway charge duration in seconds",
    ["method"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway errors",
    ["method", "error_type"],  # transient, permanent, rate_limit, timeout
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["method"],
)

# Idempotency metrics
payment_idempotency_hits_total = Counter(
    "payment_idempotency_hits_total",
    "Charge results resolved from an existing payment record",
)

# Compensation task metrics
compensation_tasks_total = Counter(
    "compensation_tasks_total",
    "Compensation task executions",
    ["task_type", "status"],  # succeeded, retried, failed
)

# Sweeper metrics
sweeper_runs_total = Counter(
    "sweeper_runs_total",
    "Reservation sweeper runs",
    ["status"],  # completed, skipped
)

sweeper_expired_reservations_total = Counter(
    "sweeper_expired_reservations_total",
    "Reservations expired by the sweeper",
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Timestamp of last completed sweep",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order(outcome: str, duration_seconds: float | None = None) -> None:
        """Record a place-order outcome."""
        orders_placed_total.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            order_placement_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reservation_attempt(result: str) -> None:
        """Record a reserve-stock attempt."""
        stock_reservation_attempts_total.labels(result=result).inc()

    @staticmethod
    def record_reservation_transition(status: str, applied: bool) -> None:
        """Record a reservation transition or no-op."""
        stock_reservation_transitions_total.labels(
            status=status, applied="true" if applied else "noop"
        ).inc()

    @staticmethod
    def record_gateway_charge(method: str, status: str, duration_seconds: float) -> None:
        """Record a gateway charge call."""
        gateway_charges_total.labels(method=method, status=status).inc()
        gateway_charge_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(method: str, error_type: str) -> None:
        """Record a gateway error."""
        gateway_errors_total.labels(method=method, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(method: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(method=method).set(state_map.get(state, 0))

    @staticmethod
    def record_idempotency_hit() -> None:
        """Record a deduplicated charge result."""
        payment_idempotency_hits_total.inc()

    @staticmethod
    def record_compensation_task(task_type: str, status: str) -> None:
        """Record a compensation task outcome."""
        compensation_tasks_total.labels(task_type=task_type, status=status).inc()

    @staticmethod
    def record_sweep(status: str, expired: int = 0) -> None:
        """Record a sweeper run."""
        sweeper_runs_total.labels(status=status).inc()
        if status != "skipped":
            sweeper_expired_reservations_total.inc(expired)
            sweeper_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
