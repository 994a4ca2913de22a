"""
Slot status rules shared by the reservation engine and the telemetry reconciler

Both paths re-derive the slot status from the current reservation state
instead of writing a fixed value, so neither clobbers the other's transition.
"""
from . import metrics
from .events import ENTITY_SLOT
from .models import SlotStatus, StatusSource


def status_after_reservation_closed(current: SlotStatus, has_open_reservation: bool) -> SlotStatus:
    """
    Status once a reservation leaves the open set (cancel, expire, complete)

    Occupied belongs to telemetry and maintenance to admins; both are kept.
    """
    current = SlotStatus(current)
    if has_open_reservation:
        return current
    if current in (SlotStatus.OCCUPIED, SlotStatus.MAINTENANCE):
        return current
    return SlotStatus.AVAILABLE


def status_after_occupancy(
    current: SlotStatus,
    occupied: bool,
    has_open_reservation: bool
) -> SlotStatus:
    """
    Status after a sensor reports occupancy

    occupied=True overrides reserved; occupied=False falls back to reserved
    while an open reservation exists. Maintenance is left untouched.
    """
    current = SlotStatus(current)
    if current == SlotStatus.MAINTENANCE:
        return current
    if occupied:
        return SlotStatus.OCCUPIED
    return SlotStatus.RESERVED if has_open_reservation else SlotStatus.AVAILABLE


def status_after_maintenance(current: SlotStatus, enabled: bool, has_open_reservation: bool) -> SlotStatus:
    """Status after an admin toggles maintenance; leaving it re-derives from reservations"""
    current = SlotStatus(current)
    if enabled:
        return SlotStatus.MAINTENANCE
    if current != SlotStatus.MAINTENANCE:
        return current
    return SlotStatus.RESERVED if has_open_reservation else SlotStatus.AVAILABLE


def apply_slot_status(slot, new_status: SlotStatus, source: StatusSource, now, outbox) -> bool:
    """
    Write a derived status onto a locked slot row

    Returns False (and records nothing) when the status is unchanged.
    """
    new_status = SlotStatus(new_status)
    if slot.status == new_status.value:
        return False

    previous = slot.status
    slot.status = new_status.value
    slot.status_source = StatusSource(source).value
    slot.status_changed_at = now

    metrics.track_slot_transition(previous, new_status.value, StatusSource(source).value)
    outbox.change(ENTITY_SLOT, "update", slot.id, {
        "code": slot.code,
        "status": new_status.value,
        "previous_status": previous,
        "source": StatusSource(source).value,
    })
    return True
