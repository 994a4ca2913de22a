"""
Tests for the Expiry Sweeper

Coverage:
- Expiry + notification forwarding
- Device liveness pass
- In-process and Redis mutual exclusion
- Start/stop of the periodic loop
"""
import asyncio

import pytest

from smartpark.models import EventKind, SlotStatus
from smartpark.notifications import RESERVATION_EXPIRED
from smartpark.sweeper import SWEEP_LOCK_KEY, ExpirySweeper

from conftest import DRIVER_A, DRIVER_B, MockRedis


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_expires_and_notifies(self, services, slot, other_slot, clock, sink):
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        await services.engine.create_reservation(DRIVER_B.user_id, other_slot.id, 60)
        clock.advance(minutes=16)

        report = await services.sweeper.run_once()
        await services.notifier.flush()

        assert report.count == 1
        assert report.expired[0].user_id == DRIVER_A.user_id
        assert sink.kinds().count(RESERVATION_EXPIRED) == 1
        assert (await services.slots.get_slot(slot.id)).status == SlotStatus.AVAILABLE.value
        assert (await services.slots.get_slot(other_slot.id)).status == SlotStatus.RESERVED.value

    @pytest.mark.asyncio
    async def test_second_sweep_finds_nothing(self, services, slot, clock):
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)

        assert (await services.sweeper.run_once()).count == 1
        assert (await services.sweeper.run_once()).count == 0

    @pytest.mark.asyncio
    async def test_marks_silent_devices_offline(self, services, device, clock):
        registered, api_key = device
        await services.reconciler.ingest_event(registered.id, api_key, EventKind.HEARTBEAT)
        clock.advance(minutes=10)

        report = await services.sweeper.run_once()

        assert report.devices_marked_offline == 1


class TestMutualExclusion:

    @pytest.mark.asyncio
    async def test_skips_while_local_run_in_progress(self, services, slot, clock):
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)

        async with services.sweeper._local_lock:
            report = await services.sweeper.run_once()

        assert report.skipped is True
        assert report.count == 0

    @pytest.mark.asyncio
    async def test_skips_when_other_node_holds_lock(self, services, slot, clock):
        redis_client = MockRedis()
        await redis_client.set(SWEEP_LOCK_KEY, "other-node")
        sweeper = ExpirySweeper(services.engine, redis_client=redis_client)
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)

        report = await sweeper.run_once()

        assert report.skipped is True
        assert await redis_client.get(SWEEP_LOCK_KEY) == "other-node"

    @pytest.mark.asyncio
    async def test_releases_own_lock(self, services, slot, clock):
        redis_client = MockRedis()
        sweeper = ExpirySweeper(services.engine, redis_client=redis_client)
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)

        report = await sweeper.run_once()

        assert report.count == 1
        assert await redis_client.get(SWEEP_LOCK_KEY) is None

    @pytest.mark.asyncio
    async def test_lock_taken_over_mid_sweep_is_kept(self, services, slot, clock, monkeypatch):
        redis_client = MockRedis()
        sweeper = ExpirySweeper(services.engine, redis_client=redis_client)
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)
        expire_overdue = services.engine.expire_overdue

        async def slow_sweep():
            # Our TTL ran out and another node acquired the lock
            redis_client.store[SWEEP_LOCK_KEY] = "other-node"
            return await expire_overdue()

        monkeypatch.setattr(services.engine, "expire_overdue", slow_sweep)
        report = await sweeper.run_once()

        assert report.count == 1
        assert redis_client.evals == 1
        assert await redis_client.get(SWEEP_LOCK_KEY) == "other-node"


class TestLoop:

    @pytest.mark.asyncio
    async def test_periodic_loop_expires(self, services, slot, clock):
        await services.engine.create_reservation(DRIVER_A.user_id, slot.id)
        clock.advance(minutes=16)
        sweeper = ExpirySweeper(services.engine, interval_seconds=0.05)
        seq = services.feed.last_seq

        await sweeper.start()
        # Watch the change feed rather than the database so the loop owns the connection
        for _ in range(200):
            if services.feed.last_seq > seq:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert sweeper.running is False
        assert (await services.slots.get_slot(slot.id)).status == SlotStatus.AVAILABLE.value
