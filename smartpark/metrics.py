"""
Prometheus metrics for the reservation core

Metrics Categories:
- Reservations: attempts, conflicts, expirations
- Telemetry: ingested events by kind and outcome
- Slot state: transitions by source
- Background: sweep duration, notification delivery
"""
from prometheus_client import (
    Counter, Histogram,
    CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)

# Custom registry (allows multiple instances for testing)
registry = CollectorRegistry()

# ============================================================
# Reservation Metrics
# ============================================================

reservation_attempts_total = Counter(
    'reservation_attempts_total',
    'Total reservation creation attempts',
    ['result'],  # created, conflict, not_found, invalid_state, invalid
    registry=registry
)

reservation_conflicts_total = Counter(
    'reservation_conflicts_total',
    'Total reservation conflicts (409 errors)',
    ['kind'],  # slot, user
    registry=registry
)

reservation_transitions_total = Counter(
    'reservation_transitions_total',
    'Reservation status transitions',
    ['to_status'],
    registry=registry
)

# ============================================================
# Telemetry Metrics
# ============================================================

telemetry_events_total = Counter(
    'telemetry_events_total',
    'Device events received',
    ['kind', 'result'],  # result: applied, stale, rejected, unauthorized
    registry=registry
)

slot_transitions_total = Counter(
    'slot_transitions_total',
    'Slot status transitions',
    ['from_status', 'to_status', 'source'],
    registry=registry
)

# ============================================================
# Background Metrics
# ============================================================

sweep_duration_seconds = Histogram(
    'sweep_duration_seconds',
    'Expiry sweep duration',
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

sweep_skipped_total = Counter(
    'sweep_skipped_total',
    'Sweeps skipped because another run held the lock',
    [],
    registry=registry
)

notifications_total = Counter(
    'notifications_total',
    'Lifecycle notifications by delivery outcome',
    ['kind', 'result'],  # result: delivered, retried, failed, dropped
    registry=registry
)


# ============================================================
# Helpers
# ============================================================

def track_reservation_attempt(result: str):
    reservation_attempts_total.labels(result=result).inc()


def track_reservation_conflict(kind: str):
    reservation_conflicts_total.labels(kind=kind).inc()


def track_reservation_transition(to_status: str, count: int = 1):
    if count:
        reservation_transitions_total.labels(to_status=to_status).inc(count)


def track_telemetry_event(kind: str, result: str):
    telemetry_events_total.labels(kind=kind, result=result).inc()


def track_slot_transition(from_status: str, to_status: str, source: str):
    slot_transitions_total.labels(from_status=from_status, to_status=to_status, source=source).inc()


def track_notification(kind: str, result: str):
    notifications_total.labels(kind=kind, result=result).inc()


def get_metrics_text() -> bytes:
    """Render the registry in Prometheus exposition format"""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
