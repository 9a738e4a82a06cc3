"""
Prometheus metrics for the Guidebook booking engine.

Service timings come from ``BaseService.measure_operation``; the other
families are bumped directly by the slot lock, the payment orchestrator and
the booking state machine.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Private registry keeps repeated app construction in tests from re-registering
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "guidebook_service_operation_duration_seconds",
    "Wall time of booking engine service calls",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

service_operations_total = Counter(
    "guidebook_service_operations_total",
    "Booking engine service calls by outcome",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

service_errors_total = Counter(
    "guidebook_service_errors_total",
    "Failed service calls by exception class",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

slot_lock_events_total = Counter(
    "guidebook_slot_lock_events_total",
    "Slot lock acquire/release outcomes",
    ["action", "outcome"],
    registry=REGISTRY,
)

payment_gateway_calls_total = Counter(
    "guidebook_payment_gateway_calls_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "guidebook_booking_transitions_total",
    "Booking state transitions by event and outcome",
    ["event", "outcome"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin recording facade over the module-level metric families."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(duration)
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if error_type:
            service_errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_slot_lock(action: str, outcome: str) -> None:
        slot_lock_events_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str) -> None:
        payment_gateway_calls_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_transition(event: str, outcome: str) -> None:
        booking_transitions_total.labels(event=event, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
