"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking attempts',
    ['status']  # created, existing, insufficient, error
)

booking_latency = Histogram(
    'booking_latency_seconds',
    'Booking request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

booking_cancellations = Counter(
    'booking_cancellations_total',
    'Cancelled bookings',
    ['was_paid']
)

# Payment metrics
payment_outcomes = Counter(
    'payment_outcomes_total',
    'Payment attempts by provider and outcome',
    ['provider', 'outcome']  # succeeded, failed, lock_expired, intent_created
)

webhook_events = Counter(
    'payment_webhook_events_total',
    'Payment provider webhook events',
    ['event_type', 'result']  # processed, ignored, invalid_signature, error
)

refunds_initiated = Counter(
    'refunds_initiated_total',
    'Refund initiations by provider and resulting status',
    ['provider', 'refund_status']
)

# Seat lock metrics
seat_lock_sweeps = Counter(
    'seat_lock_sweeps_total',
    'Seat lock sweeps by trigger',
    ['trigger']  # inline, background, admin, webhook
)

seat_locks_released = Counter(
    'seat_locks_released_total',
    'Expired bookings released back to the ledger'
)

seats_released = Counter(
    'seats_released_total',
    'Seats returned to the ledger by expiry sweeps'
)

# Side channels
side_effect_failures = Counter(
    'side_effect_failures_total',
    'Best-effort post-commit side effects that failed',
    ['kind']  # pdf, email, refund, audit
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
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
    """Record booking attempt. Status: created, existing, insufficient, error"""
    booking_attempts.labels(status=status).inc()


def record_payment(provider: str, outcome: str):
    payment_outcomes.labels(provider=provider, outcome=outcome).inc()


def record_webhook(event_type: str, result: str):
    webhook_events.labels(event_type=event_type or "unknown", result=result).inc()


def record_refund(provider: str, refund_status: str):
    refunds_initiated.labels(provider=provider, refund_status=refund_status).inc()


def record_sweep(trigger: str, released_bookings: int, released_seats: int):
    """Record one sweep run and how much it gave back to the ledger."""
    seat_lock_sweeps.labels(trigger=trigger).inc()
    if released_bookings:
        seat_locks_released.inc(released_bookings)
        seats_released.inc(released_seats)


def record_side_effect_failure(kind: str):
    side_effect_failures.labels(kind=kind).inc()
