"""
Tests for the Telemetry Reconciler

Coverage:
- Device authentication (bad key, unknown device)
- Occupancy precedence over reservations and fallback to reserved
- Duplicate and out-of-order events
- Device clocks running ahead of the server
- Maintenance slots ignore occupancy
- Rejected payload audit trail
- Liveness: online on any event, offline after silence
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from smartpark.exceptions import AuthError, ValidationError
from smartpark.models import DeviceEvent, DeviceStatus, EventKind, SlotStatus, StatusSource
from smartpark.telemetry import CLOCK_AHEAD_NOTE

from conftest import ADMIN, DRIVER_A, T0, count_events


async def slot_of(services, slot_id):
    return await services.slots.get_slot(slot_id)


class TestDeviceAuthentication:

    @pytest.mark.asyncio
    async def test_valid_key(self, services, device):
        registered, api_key = device
        verified = await services.reconciler.verify_device(registered.id, api_key)
        assert verified.id == registered.id

    @pytest.mark.asyncio
    async def test_wrong_key_records_nothing(self, services, device):
        registered, _ = device

        with pytest.raises(AuthError):
            await services.reconciler.ingest_event(registered.id, "dk_wrong", EventKind.HEARTBEAT)

        assert await count_events(services) == 0

    @pytest.mark.asyncio
    async def test_unknown_device(self, services, device):
        _, api_key = device
        with pytest.raises(AuthError):
            await services.reconciler.verify_device(uuid4(), api_key)

    @pytest.mark.asyncio
    async def test_missing_key(self, services, device):
        registered, _ = device
        with pytest.raises(AuthError):
            await services.reconciler.verify_device(registered.id, None)


class TestOccupancy:

    @pytest.mark.asyncio
    async def test_occupied_overrides_reserved_then_reverts(self, services, slot, device):
        registered, api_key = device
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)
        occupied = await slot_of(services, slot.id)
        assert occupied.status == SlotStatus.OCCUPIED.value
        assert occupied.status_source == StatusSource.TELEMETRY.value

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=False)
        assert (await slot_of(services, slot.id)).status == SlotStatus.RESERVED.value

    @pytest.mark.asyncio
    async def test_vacated_without_reservation_is_available(self, services, slot, device):
        registered, api_key = device

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)
        assert (await slot_of(services, slot.id)).status == SlotStatus.OCCUPIED.value

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=False)
        assert (await slot_of(services, slot.id)).status == SlotStatus.AVAILABLE.value

    @pytest.mark.asyncio
    async def test_duplicates_converge(self, services, slot, device):
        registered, api_key = device
        for _ in range(3):
            await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)

        assert (await slot_of(services, slot.id)).status == SlotStatus.OCCUPIED.value
        assert await count_events(services) == 3

    @pytest.mark.asyncio
    async def test_reservation_rows_untouched(self, services, slot, device):
        registered, api_key = device
        reservation = await services.engine.create_reservation(DRIVER_A.user_id, slot.id)

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)

        fetched = await services.engine.get_reservation(DRIVER_A.user_id, reservation.id)
        assert fetched.status == reservation.status
        assert fetched.updated_at == reservation.updated_at

    @pytest.mark.asyncio
    async def test_maintenance_ignores_occupancy(self, services, slot, device):
        registered, api_key = device
        await services.slots.set_maintenance(ADMIN, slot.id, True)

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)

        assert (await slot_of(services, slot.id)).status == SlotStatus.MAINTENANCE.value

    @pytest.mark.asyncio
    async def test_unlinked_device_changes_no_slot(self, services, slot):
        registered, api_key = await services.devices.create_device(ADMIN, "spare")

        event = await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY, occupied=True)

        assert event.accepted is True
        assert (await slot_of(services, slot.id)).status == SlotStatus.AVAILABLE.value


class TestOrdering:

    @pytest.mark.asyncio
    async def test_older_event_recorded_not_applied(self, services, slot, device):
        registered, api_key = device

        await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=True, recorded_at=T0
        )
        late = await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=False, recorded_at=T0 - timedelta(seconds=30)
        )

        assert late.accepted is False
        assert late.note
        assert (await slot_of(services, slot.id)).status == SlotStatus.OCCUPIED.value
        assert await count_events(services) == 2

    @pytest.mark.asyncio
    async def test_same_timestamp_is_applied(self, services, slot, device):
        registered, api_key = device
        await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=True, recorded_at=T0
        )
        repeat = await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=False, recorded_at=T0
        )

        assert repeat.accepted is True
        assert (await slot_of(services, slot.id)).status == SlotStatus.AVAILABLE.value

    @pytest.mark.asyncio
    async def test_future_timestamp_does_not_freeze_slot(self, services, slot, device, clock):
        registered, api_key = device

        ahead = await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=True, recorded_at=T0 + timedelta(days=365)
        )
        clock.advance(seconds=30)
        vacated = await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.OCCUPANCY, occupied=False, recorded_at=clock()
        )

        assert ahead.accepted is True
        assert ahead.recorded_at == T0
        assert ahead.note == CLOCK_AHEAD_NOTE
        assert vacated.accepted is True
        assert vacated.note is None
        assert (await slot_of(services, slot.id)).status == SlotStatus.AVAILABLE.value

    @pytest.mark.asyncio
    async def test_small_clock_skew_kept(self, services, slot, device):
        registered, api_key = device
        event = await services.reconciler.ingest_event(
            registered.id, api_key, EventKind.HEARTBEAT, recorded_at=T0 + timedelta(seconds=20)
        )

        assert event.recorded_at == T0 + timedelta(seconds=20)
        assert event.note is None


class TestRejectedPayloads:

    @pytest.mark.asyncio
    async def test_occupancy_without_flag(self, services, device):
        registered, api_key = device

        with pytest.raises(ValidationError):
            await services.reconciler.ingest_event(registered.id, api_key, EventKind.OCCUPANCY)

        assert await count_events(services, DeviceEvent.accepted.is_(False)) == 1

    @pytest.mark.asyncio
    async def test_record_rejected_requires_valid_key(self, services, device):
        registered, api_key = device

        assert await services.reconciler.record_rejected(registered.id, "dk_bad", {"x": 1}, "bad") is False
        assert await services.reconciler.record_rejected(registered.id, api_key, {"x": 1}, "bad", "nonsense")
        assert await count_events(services) == 1


class TestLiveness:

    @pytest.mark.asyncio
    async def test_heartbeat_marks_online(self, services, device):
        registered, api_key = device
        assert registered.status == DeviceStatus.OFFLINE.value

        await services.reconciler.ingest_event(registered.id, api_key, EventKind.HEARTBEAT)

        refreshed = await services.devices.get_device(ADMIN, registered.id)
        assert refreshed.status == DeviceStatus.ONLINE.value
        assert refreshed.last_seen_at == T0

    @pytest.mark.asyncio
    async def test_silent_devices_go_offline(self, services, device, clock):
        registered, api_key = device
        await services.reconciler.ingest_event(registered.id, api_key, EventKind.HEARTBEAT)

        clock.advance(seconds=120)
        assert await services.reconciler.mark_stale_devices_offline() == 0

        clock.advance(seconds=300)
        assert await services.reconciler.mark_stale_devices_offline() == 1
        refreshed = await services.devices.get_device(ADMIN, registered.id)
        assert refreshed.status == DeviceStatus.OFFLINE.value
