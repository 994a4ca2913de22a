"""
ORM models: parking slots, devices, reservations, device events
All models in one place for simplicity
"""
from enum import Enum
import uuid

from sqlalchemy import (
    Boolean, CheckConstraint, Column, ForeignKey, Index, JSON, String, Text, Uuid, text
)
from sqlalchemy.orm import relationship

from .database import Base, UTCDateTime
from .utils import utcnow


# ============================================================
# Enums
# ============================================================

class SlotStatus(str, Enum):
    """Parking slot states"""
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class SlotType(str, Enum):
    REGULAR = "regular"
    DISABLED = "disabled"
    EV_CHARGING = "ev_charging"
    COMPACT = "compact"


class StatusSource(str, Enum):
    """Which path performed the last slot status transition"""
    RESERVATION = "reservation"
    TELEMETRY = "telemetry"
    ADMIN = "admin"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class ReservationStatus(str, Enum):
    """Reservation statuses"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EventKind(str, Enum):
    """Device event kinds"""
    HEARTBEAT = "heartbeat"
    OCCUPANCY = "occupancy"
    STATUS = "status"


OPEN_STATUSES = (ReservationStatus.PENDING.value, ReservationStatus.ACTIVE.value)
TERMINAL_STATUSES = (
    ReservationStatus.COMPLETED.value,
    ReservationStatus.CANCELLED.value,
    ReservationStatus.EXPIRED.value,
)


def _in_list(column: str, values) -> str:
    return f"{column} IN ({', '.join(repr(v.value) for v in values)})"


# Partial-index predicate shared by both open-reservation unique indexes
_OPEN_PREDICATE = text("status IN ('pending', 'active')")


# ============================================================
# Parking Slot
# ============================================================

class ParkingSlot(Base):
    """Physical parking space"""
    __tablename__ = "parking_slots"
    __table_args__ = (
        CheckConstraint(_in_list("status", SlotStatus), name="ck_parking_slots_status"),
        CheckConstraint(_in_list("slot_type", SlotType), name="ck_parking_slots_type"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(20), unique=True, nullable=False, index=True)
    zone = Column(String(50), nullable=False, default="", index=True)
    slot_type = Column(String(20), nullable=False, default=SlotType.REGULAR.value)

    status = Column(String(20), nullable=False, default=SlotStatus.AVAILABLE.value, index=True)
    status_source = Column(String(20), nullable=True)
    status_changed_at = Column(UTCDateTime, nullable=False, default=utcnow)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    device = relationship("Device", back_populates="slot", uselist=False, lazy="selectin")

    def __repr__(self):
        return f"<ParkingSlot {self.code} status={self.status}>"

    @property
    def device_id(self):
        return self.device.id if self.device else None


# ============================================================
# Device
# ============================================================

class Device(Base):
    """IoT occupancy sensor"""
    __tablename__ = "devices"
    __table_args__ = (
        CheckConstraint(_in_list("status", DeviceStatus), name="ck_devices_status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    firmware_version = Column(String(50), nullable=False, default="1.0.0")

    # bcrypt hash only; the plaintext key is never stored
    key_hash = Column(String(100), nullable=False)
    key_rotated_at = Column(UTCDateTime, nullable=True)

    status = Column(String(20), nullable=False, default=DeviceStatus.OFFLINE.value)
    last_seen_at = Column(UTCDateTime, nullable=True)
    last_event_at = Column(UTCDateTime, nullable=True)

    slot_id = Column(
        Uuid,
        ForeignKey("parking_slots.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    slot = relationship("ParkingSlot", back_populates="device", lazy="selectin")

    def __repr__(self):
        return f"<Device {self.name} status={self.status}>"


# ============================================================
# Reservation
# ============================================================

class Reservation(Base):
    """Driver's hold on a slot"""
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint(_in_list("status", ReservationStatus), name="ck_reservations_status"),
        CheckConstraint("expires_at > reserved_at", name="ck_reservations_window"),
        # At most one open reservation per slot and per user
        Index(
            "uq_reservations_slot_open",
            "slot_id",
            unique=True,
            postgresql_where=_OPEN_PREDICATE,
            sqlite_where=_OPEN_PREDICATE,
        ),
        Index(
            "uq_reservations_user_open",
            "user_id",
            unique=True,
            postgresql_where=_OPEN_PREDICATE,
            sqlite_where=_OPEN_PREDICATE,
        ),
        Index("ix_reservations_status_expires", "status", "expires_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slot_id = Column(Uuid, ForeignKey("parking_slots.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=ReservationStatus.ACTIVE.value)

    reserved_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    checked_in_at = Column(UTCDateTime, nullable=True)
    checked_out_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    slot = relationship("ParkingSlot", lazy="selectin")

    def __repr__(self):
        return f"<Reservation slot={self.slot_id} user={self.user_id} status={self.status}>"

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def slot_code(self):
        return self.slot.code if self.slot else None


# ============================================================
# Device Event (append-only)
# ============================================================

class DeviceEvent(Base):
    """Telemetry audit trail; rows are never updated"""
    __tablename__ = "device_events"
    __table_args__ = (
        CheckConstraint(_in_list("kind", EventKind), name="ck_device_events_kind"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id = Column(Uuid, ForeignKey("devices.id"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)
    occupied = Column(Boolean, nullable=True)
    raw = Column(JSON, nullable=True)

    recorded_at = Column(UTCDateTime, nullable=False)
    received_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)

    accepted = Column(Boolean, nullable=False, default=True)
    note = Column(Text, nullable=True)

    def __repr__(self):
        return f"<DeviceEvent device={self.device_id} kind={self.kind} occupied={self.occupied}>"
