"""
Telemetry Reconciler

Authenticates device events, appends them to the audit trail and applies
occupancy to the linked slot. Slot status is re-derived from the current
reservation rows under the slot lock, so a concurrent cancel or expiry is
never overwritten with a stale value. Reservation rows are never touched.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update

from . import metrics
from .auth import generate_device_key, hash_device_key, verify_device_key
from .database import Database
from .events import ENTITY_DEVICE, ChangeFeed, Outbox
from .exceptions import AuthError, ValidationError
from .logging_config import get_logger
from .models import Device, DeviceEvent, DeviceStatus, EventKind, ParkingSlot, SlotStatus, StatusSource
from .reservations import has_open_reservation
from .slot_state import apply_slot_status, status_after_occupancy
from .utils import ensure_utc, utcnow

logger = get_logger(__name__)

STALE_NOTE = "older than last applied event; recorded only"
CLOCK_AHEAD_NOTE = "device clock ahead; receive time used"


class TelemetryReconciler:
    """
    Usage:
        reconciler = TelemetryReconciler(db, feed, bcrypt_rounds=settings.device_key_bcrypt_rounds)
        event = await reconciler.ingest_event(device_id, api_key, EventKind.OCCUPANCY, occupied=True)
    """

    def __init__(
        self,
        database: Database,
        feed: Optional[ChangeFeed] = None,
        bcrypt_rounds: int = 10,
        offline_after_seconds: int = 300,
        clock_skew_seconds: int = 60,
        clock: Callable = utcnow,
    ):
        self.database = database
        self.feed = feed
        self.offline_after_seconds = offline_after_seconds
        self.clock_skew_seconds = clock_skew_seconds
        self.clock = clock
        # Unknown devices are checked against this so they cost the same as known ones
        self._decoy_hash = hash_device_key(generate_device_key(), rounds=bcrypt_rounds)

    # ============================================================
    # Authentication
    # ============================================================

    async def verify_device(self, device_id: Optional[UUID], api_key: Optional[str]) -> Device:
        """
        Resolve a device from its presented credential

        Raises:
            AuthError: unknown device, missing key or key mismatch
        """
        device = None
        if device_id is not None:
            async with self.database.session() as session:
                device = await session.get(Device, device_id)

        key_hash = device.key_hash if device is not None else None
        # bcrypt is CPU-bound; keep it off the event loop
        valid = await asyncio.to_thread(verify_device_key, api_key, key_hash, self._decoy_hash)
        if not api_key or not valid:
            logger.warning("telemetry_rejected", device_id=str(device_id), reason="invalid_credential")
            metrics.track_telemetry_event("unknown", "unauthorized")
            raise AuthError("Invalid device credential")
        return device

    # ============================================================
    # Ingestion
    # ============================================================

    async def ingest_event(
        self,
        device_id: UUID,
        api_key: Optional[str],
        kind: EventKind,
        occupied: Optional[bool] = None,
        recorded_at: Optional[datetime] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> DeviceEvent:
        """
        Verify, record and apply one device event

        Duplicates converge: applying the same occupancy twice leaves the
        slot where the first one put it.

        Raises:
            AuthError: bad credential (nothing recorded)
            ValidationError: occupancy event without an occupied flag (recorded as rejected)
        """
        kind = EventKind(kind)
        await self.verify_device(device_id, api_key)

        if kind == EventKind.OCCUPANCY and occupied is None:
            await self._record_rejected(device_id, kind, raw, "occupancy event without is_occupied")
            raise ValidationError("is_occupied", "required for occupancy events")

        outbox = Outbox()
        async with self.database.transaction() as session:
            device = await session.scalar(
                select(Device).where(Device.id == device_id).with_for_update()
            )
            if device is None:
                raise AuthError("Invalid device credential")
            now = self.clock()
            recorded_at, note = self._device_time(device.id, recorded_at, now)
            stale = device.last_event_at is not None and recorded_at < device.last_event_at

            event = DeviceEvent(
                device_id=device.id,
                kind=kind.value,
                occupied=occupied,
                raw=raw,
                recorded_at=recorded_at,
                received_at=now,
                accepted=not stale,
                note=STALE_NOTE if stale else note,
            )
            session.add(event)

            was_status = device.status
            device.status = DeviceStatus.ONLINE.value
            device.last_seen_at = now
            if not stale:
                device.last_event_at = recorded_at
            if was_status != device.status:
                outbox.change(ENTITY_DEVICE, "update", device.id, {"status": device.status})

            if not stale and kind == EventKind.OCCUPANCY and device.slot_id is not None:
                await self._apply_occupancy(session, device, occupied, now, outbox)

            await session.flush()

        outbox.release(self.feed)
        result = "stale" if stale else "applied"
        metrics.track_telemetry_event(kind.value, result)
        logger.info(
            "telemetry_ingested",
            device_id=str(device_id),
            kind=kind.value,
            occupied=occupied,
            result=result,
        )
        return event

    def _device_time(self, device_id: UUID, recorded_at: Optional[datetime], now: datetime):
        """
        Event time used for ordering

        A device clock running ahead would push last_event_at into the future
        and make every later event stale, so such timestamps fall back to now.
        """
        recorded_at = ensure_utc(recorded_at)
        if recorded_at is None:
            return now, None
        if recorded_at > now + timedelta(seconds=self.clock_skew_seconds):
            logger.warning(
                "telemetry_clock_ahead",
                device_id=str(device_id),
                device_time=recorded_at.isoformat(),
                received_at=now.isoformat(),
            )
            return now, CLOCK_AHEAD_NOTE
        return recorded_at, None

    async def _apply_occupancy(self, session, device: Device, occupied: bool, now, outbox: Outbox):
        slot = await session.scalar(
            select(ParkingSlot).where(ParkingSlot.id == device.slot_id).with_for_update()
        )
        if slot is None:
            return

        has_open = await has_open_reservation(session, slot.id)
        current = SlotStatus(slot.status)
        new_status = status_after_occupancy(current, occupied, has_open)

        if current == SlotStatus.MAINTENANCE:
            logger.debug("occupancy_ignored_maintenance", slot_id=str(slot.id), occupied=occupied)
        elif occupied and not has_open:
            logger.warning("occupancy_without_reservation", slot_id=str(slot.id), slot_code=slot.code)

        apply_slot_status(slot, new_status, StatusSource.TELEMETRY, now, outbox)

    # ============================================================
    # Rejected payloads
    # ============================================================

    async def record_rejected(
        self,
        device_id: Optional[UUID],
        api_key: Optional[str],
        raw: Optional[Dict[str, Any]],
        note: str,
        kind: Optional[str] = None,
    ) -> bool:
        """
        Audit a malformed payload when its credential still verifies

        Returns True when a rejected event was recorded. Never raises for a
        bad credential; the caller already answers 400.
        """
        try:
            await self.verify_device(device_id, api_key)
        except AuthError:
            return False

        try:
            event_kind = EventKind(kind)
        except ValueError:
            event_kind = EventKind.STATUS
        await self._record_rejected(device_id, event_kind, raw, note)
        return True

    async def _record_rejected(self, device_id: UUID, kind: EventKind, raw, note: str):
        async with self.database.transaction() as session:
            now = self.clock()
            session.add(DeviceEvent(
                device_id=device_id,
                kind=kind.value,
                raw=raw,
                recorded_at=now,
                received_at=now,
                accepted=False,
                note=note,
            ))
        metrics.track_telemetry_event(kind.value, "rejected")
        logger.warning("telemetry_rejected", device_id=str(device_id), reason=note)

    # ============================================================
    # Liveness
    # ============================================================

    async def mark_stale_devices_offline(self, cutoff: Optional[datetime] = None) -> int:
        """Online devices not seen since cutoff become offline"""
        outbox = Outbox()
        async with self.database.transaction() as session:
            now = self.clock()
            if cutoff is None:
                cutoff = now - timedelta(seconds=self.offline_after_seconds)
            result = await session.execute(
                update(Device)
                .where(
                    Device.status == DeviceStatus.ONLINE.value,
                    Device.last_seen_at < cutoff,
                )
                .values(status=DeviceStatus.OFFLINE.value, updated_at=now)
                .returning(Device.id)
                .execution_options(synchronize_session=False)
            )
            device_ids = list(result.scalars().all())
            for device_id in device_ids:
                outbox.change(ENTITY_DEVICE, "update", device_id, {"status": DeviceStatus.OFFLINE.value})

        outbox.release(self.feed)
        if device_ids:
            logger.info("devices_marked_offline", count=len(device_ids))
        return len(device_ids)
