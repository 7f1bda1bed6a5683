"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking creation attempts',
    ['status']  # success or the error code, e.g. SlotFull
)

booking_latency = Histogram(
    'booking_latency_seconds',
    'Booking creation latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

booking_transitions = Counter(
    'booking_status_transitions_total',
    'Booking status transitions',
    ['from_status', 'to_status']
)

slot_reservation_retries = Counter(
    'slot_reservation_retries_total',
    'Slot capacity reservation retries due to version conflicts'
)

# Payment metrics
payment_requests = Counter(
    'payment_requests_total',
    'Outbound payment processor calls',
    ['operation', 'result']  # create/refund/retrieve, ok/declined/invalid/unavailable/timeout
)

payment_latency = Histogram(
    'payment_gateway_latency_seconds',
    'Payment processor call latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Reconciliation metrics
webhook_events = Counter(
    'payment_webhook_events_total',
    'Inbound payment notifications',
    ['result']  # processed, duplicate, discarded, retrying, dead_lettered, bad_signature
)

refunds_issued = Counter(
    'refunds_issued_total',
    'Refunds issued through the payment processor',
    ['result']
)

outbox_dispatches = Counter(
    'outbox_dispatches_total',
    'Outbox side effects dispatched after commit',
    ['event_type', 'result']
)

# Ratings
ratings_submitted = Counter(
    'ratings_submitted_total',
    'Post-event ratings',
    ['result']
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_booking_attempt(status: str):
    """Record booking attempt. Status: success or the error code."""
    booking_attempts.labels(status=status).inc()


def record_transition(from_status: str, to_status: str):
    booking_transitions.labels(from_status=from_status, to_status=to_status).inc()


def record_payment_call(operation: str, result: str):
    payment_requests.labels(operation=operation, result=result).inc()


def record_webhook(result: str):
    webhook_events.labels(result=result).inc()


def record_outbox_dispatch(event_type: str, ok: bool):
    outbox_dispatches.labels(event_type=event_type, result="ok" if ok else "failed").inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()
