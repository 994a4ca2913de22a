"""
Slot & Device Registry
Admin-owned inventory. Slot status is never written here except through the
maintenance transition; devices receive credentials that are shown once.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .auth import Caller, generate_device_key, hash_device_key
from .database import Database
from .events import ENTITY_DEVICE, ENTITY_SLOT, ChangeFeed, Outbox
from .exceptions import ConflictError, ForbiddenError, InvalidStateError, NotFoundError
from .models import (
    Device, DeviceEvent, ParkingSlot, Reservation, SlotStatus, SlotType, StatusSource
)
from .reservations import has_open_reservation
from .slot_state import apply_slot_status, status_after_maintenance
from .utils import utcnow

logger = logging.getLogger(__name__)


def require_admin(caller: Caller):
    if not caller.is_admin:
        raise ForbiddenError("Admin role required")


def _slot_data(slot: ParkingSlot) -> Dict[str, Any]:
    return {"code": slot.code, "zone": slot.zone, "slot_type": slot.slot_type, "status": slot.status}


def _device_data(device: Device) -> Dict[str, Any]:
    return {
        "name": device.name,
        "firmware_version": device.firmware_version,
        "status": device.status,
        "slot_id": str(device.slot_id) if device.slot_id else None,
    }


class SlotRegistry:
    """Parking slot inventory"""

    def __init__(self, database: Database, feed: Optional[ChangeFeed] = None, clock: Callable = utcnow):
        self.database = database
        self.feed = feed
        self.clock = clock

    async def list_slots(
        self,
        status: Optional[SlotStatus] = None,
        zone: Optional[str] = None,
        slot_type: Optional[SlotType] = None,
    ) -> List[ParkingSlot]:
        query = select(ParkingSlot)
        if status is not None:
            query = query.where(ParkingSlot.status == SlotStatus(status).value)
        if zone is not None:
            query = query.where(ParkingSlot.zone == zone)
        if slot_type is not None:
            query = query.where(ParkingSlot.slot_type == SlotType(slot_type).value)

        async with self.database.session() as session:
            slots = list((await session.scalars(query.order_by(ParkingSlot.code))).all())
        logger.debug(f"List slots: count={len(slots)}")
        return slots

    async def get_slot(self, slot_id: UUID) -> ParkingSlot:
        async with self.database.session() as session:
            slot = await session.get(ParkingSlot, slot_id)
        if slot is None:
            raise NotFoundError("Slot", slot_id)
        return slot

    async def create_slot(self, caller: Caller, code: str, zone: str = "",
                          slot_type: SlotType = SlotType.REGULAR) -> ParkingSlot:
        require_admin(caller)
        outbox = Outbox()
        now = self.clock()
        try:
            async with self.database.transaction() as session:
                slot = ParkingSlot(
                    code=code,
                    zone=zone,
                    slot_type=SlotType(slot_type).value,
                    status=SlotStatus.AVAILABLE.value,
                    status_source=StatusSource.ADMIN.value,
                    status_changed_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(slot)
                await session.flush()
                await session.refresh(slot, ["device"])
                outbox.change(ENTITY_SLOT, "insert", slot.id, _slot_data(slot))
        except IntegrityError as e:
            raise ConflictError(f"Slot code already exists: {code}", {"code": code}) from e

        outbox.release(self.feed)
        logger.info(f"Slot created: {slot.code} ({slot.id}) by {caller.user_id}")
        return slot

    async def update_slot(self, caller: Caller, slot_id: UUID, changes: Dict[str, Any]) -> ParkingSlot:
        """Edit code, zone or slot type; status is not an editable attribute"""
        require_admin(caller)
        outbox = Outbox()
        try:
            async with self.database.transaction() as session:
                slot = await self._lock_slot(session, slot_id)
                for field in ("code", "zone", "slot_type"):
                    if changes.get(field) is not None:
                        value = changes[field]
                        setattr(slot, field, value.value if isinstance(value, SlotType) else value)
                slot.updated_at = self.clock()
                await session.flush()
                outbox.change(ENTITY_SLOT, "update", slot.id, _slot_data(slot))
        except IntegrityError as e:
            raise ConflictError(f"Slot code already exists: {changes.get('code')}") from e

        outbox.release(self.feed)
        logger.info(f"Slot updated: {slot.code} fields={sorted(changes)}")
        return slot

    async def delete_slot(self, caller: Caller, slot_id: UUID):
        """Reservations are never deleted, so a slot with history stays"""
        require_admin(caller)
        outbox = Outbox()
        async with self.database.transaction() as session:
            slot = await self._lock_slot(session, slot_id)
            history = await session.scalar(
                select(func.count()).select_from(Reservation).where(Reservation.slot_id == slot.id)
            )
            if history:
                raise ConflictError(
                    f"Slot {slot.code} has reservation history and cannot be deleted",
                    {"reservations": history},
                )
            if slot.device is not None:
                outbox.change(ENTITY_DEVICE, "update", slot.device.id, {"slot_id": None})
            await session.delete(slot)
            outbox.change(ENTITY_SLOT, "delete", slot.id, {"code": slot.code})

        outbox.release(self.feed)
        logger.info(f"Slot deleted: {slot.code} ({slot.id})")

    async def set_maintenance(self, caller: Caller, slot_id: UUID, enabled: bool) -> ParkingSlot:
        """
        Enter or leave maintenance

        Entering requires that no open reservation holds the slot; leaving
        re-derives the status from reservations.
        """
        require_admin(caller)
        outbox = Outbox()
        async with self.database.transaction() as session:
            slot = await self._lock_slot(session, slot_id)
            has_open = await has_open_reservation(session, slot.id)
            if enabled and has_open:
                raise InvalidStateError(
                    f"Slot {slot.code} has an open reservation",
                    current_state=slot.status,
                )
            new_status = status_after_maintenance(SlotStatus(slot.status), enabled, has_open)
            apply_slot_status(slot, new_status, StatusSource.ADMIN, self.clock(), outbox)

        outbox.release(self.feed)
        logger.info(f"Slot {slot.code} maintenance={'on' if enabled else 'off'} status={slot.status}")
        return slot

    @staticmethod
    async def _lock_slot(session, slot_id: UUID) -> ParkingSlot:
        slot = await session.scalar(
            select(ParkingSlot).where(ParkingSlot.id == slot_id).with_for_update()
        )
        if slot is None:
            raise NotFoundError("Slot", slot_id)
        return slot


class DeviceRegistry:
    """Sensor inventory and credentials"""

    def __init__(
        self,
        database: Database,
        feed: Optional[ChangeFeed] = None,
        bcrypt_rounds: int = 10,
        clock: Callable = utcnow,
    ):
        self.database = database
        self.feed = feed
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    async def list_devices(self, caller: Caller) -> List[Device]:
        require_admin(caller)
        async with self.database.session() as session:
            return list((await session.scalars(select(Device).order_by(Device.name))).all())

    async def get_device(self, caller: Caller, device_id: UUID) -> Device:
        require_admin(caller)
        async with self.database.session() as session:
            device = await session.get(Device, device_id)
        if device is None:
            raise NotFoundError("Device", device_id)
        return device

    async def create_device(
        self,
        caller: Caller,
        name: str,
        firmware_version: str = "1.0.0",
        slot_id: Optional[UUID] = None,
    ) -> Tuple[Device, str]:
        """
        Register a device

        Returns:
            (device, api_key); the plaintext key is not stored anywhere
        """
        require_admin(caller)
        api_key = generate_device_key()
        key_hash = await asyncio.to_thread(hash_device_key, api_key, self.bcrypt_rounds)
        outbox = Outbox()
        now = self.clock()

        try:
            async with self.database.transaction() as session:
                if slot_id is not None:
                    await self._check_slot_free(session, slot_id)
                device = Device(
                    name=name,
                    firmware_version=firmware_version,
                    key_hash=key_hash,
                    key_rotated_at=now,
                    slot_id=slot_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(device)
                await session.flush()
                await session.refresh(device, ["slot"])
                outbox.change(ENTITY_DEVICE, "insert", device.id, _device_data(device))
        except IntegrityError as e:
            raise ConflictError("Slot already has a linked device", {"slot_id": str(slot_id)}) from e

        outbox.release(self.feed)
        logger.info(f"Device created: {device.name} ({device.id}) slot={slot_id}")
        return device, api_key

    async def update_device(self, caller: Caller, device_id: UUID, changes: Dict[str, Any]) -> Device:
        """
        Edit name/firmware and link or unlink a slot

        changes holds only the fields the admin sent; slot_id=None unlinks.
        """
        require_admin(caller)
        outbox = Outbox()
        try:
            async with self.database.transaction() as session:
                device = await self._lock_device(session, device_id)
                if changes.get("name") is not None:
                    device.name = changes["name"]
                if changes.get("firmware_version") is not None:
                    device.firmware_version = changes["firmware_version"]
                if "slot_id" in changes and changes["slot_id"] != device.slot_id:
                    if changes["slot_id"] is not None:
                        await self._check_slot_free(session, changes["slot_id"], device.id)
                    device.slot_id = changes["slot_id"]
                device.updated_at = self.clock()
                await session.flush()
                await session.refresh(device, ["slot"])
                outbox.change(ENTITY_DEVICE, "update", device.id, _device_data(device))
        except IntegrityError as e:
            raise ConflictError("Slot already has a linked device", {"slot_id": str(changes.get("slot_id"))}) from e

        outbox.release(self.feed)
        logger.info(f"Device updated: {device.id} fields={sorted(changes)}")
        return device

    async def rotate_key(self, caller: Caller, device_id: UUID) -> Tuple[Device, str]:
        """Replace the device credential; the old key stops working immediately"""
        require_admin(caller)
        api_key = generate_device_key()
        key_hash = await asyncio.to_thread(hash_device_key, api_key, self.bcrypt_rounds)
        outbox = Outbox()

        async with self.database.transaction() as session:
            device = await self._lock_device(session, device_id)
            now = self.clock()
            device.key_hash = key_hash
            device.key_rotated_at = now
            device.updated_at = now
            outbox.change(ENTITY_DEVICE, "update", device.id, {"key_rotated_at": now.isoformat()})

        outbox.release(self.feed)
        logger.info(f"Device key rotated: {device.id}")
        return device, api_key

    async def delete_device(self, caller: Caller, device_id: UUID):
        """Devices with recorded events are kept for the audit trail; unlink them instead"""
        require_admin(caller)
        outbox = Outbox()
        async with self.database.transaction() as session:
            device = await self._lock_device(session, device_id)
            events = await session.scalar(
                select(func.count()).select_from(DeviceEvent).where(DeviceEvent.device_id == device.id)
            )
            if events:
                raise ConflictError(
                    f"Device {device.name} has recorded events and cannot be deleted",
                    {"events": events},
                )
            await session.delete(device)
            outbox.change(ENTITY_DEVICE, "delete", device.id, {"name": device.name})

        outbox.release(self.feed)
        logger.info(f"Device deleted: {device.id}")

    @staticmethod
    async def _lock_device(session, device_id: UUID) -> Device:
        device = await session.scalar(
            select(Device).where(Device.id == device_id).with_for_update()
        )
        if device is None:
            raise NotFoundError("Device", device_id)
        return device

    @staticmethod
    async def _check_slot_free(session, slot_id: UUID, device_id: Optional[UUID] = None):
        slot = await session.get(ParkingSlot, slot_id)
        if slot is None:
            raise NotFoundError("Slot", slot_id)
        linked = await session.scalar(select(Device).where(Device.slot_id == slot_id))
        if linked is not None and linked.id != device_id:
            raise ConflictError(
                f"Slot {slot.code} is already linked to device {linked.id}",
                {"slot_id": str(slot_id), "device_id": str(linked.id)},
            )
