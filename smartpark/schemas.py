"""
Pydantic models for request/response validation
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from .models import DeviceStatus, EventKind, ReservationStatus, SlotStatus, SlotType


# ============================================================
# Reservation Models
# ============================================================

class ReservationCreateRequest(BaseModel):
    """Driver request body for POST /reservations/create"""
    slot_id: UUID
    expires_in_minutes: Optional[StrictInt] = Field(
        None, description="Hold duration in minutes; server default when omitted"
    )


class ReservationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    slot_id: UUID
    slot_code: Optional[str] = None
    user_id: str
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


# ============================================================
# Slot Models
# ============================================================

class SlotBase(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    zone: str = Field("", max_length=50)
    slot_type: SlotType = SlotType.REGULAR

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("code must not be blank")
        return v


class SlotCreate(SlotBase):
    """Admin request for creating a slot; status always starts as available"""


class SlotUpdate(BaseModel):
    """Admin edit of non-status attributes (all fields optional)"""
    model_config = ConfigDict(extra="forbid")

    code: Optional[str] = Field(None, min_length=1, max_length=20)
    zone: Optional[str] = Field(None, max_length=50)
    slot_type: Optional[SlotType] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().upper()
        if not v:
            raise ValueError("code must not be blank")
        return v


class SlotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    code: str
    zone: str
    slot_type: SlotType
    status: SlotStatus
    status_source: Optional[str] = None
    status_changed_at: datetime
    device_id: Optional[UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class MaintenanceRequest(BaseModel):
    enabled: bool


# ============================================================
# Device Models
# ============================================================

class DeviceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    firmware_version: str = Field("1.0.0", max_length=50)
    slot_id: Optional[UUID] = None


class DeviceUpdate(BaseModel):
    """Admin edit; slot_id=None in the body unlinks the device"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    firmware_version: Optional[str] = Field(None, max_length=50)
    slot_id: Optional[UUID] = None


class DeviceRead(BaseModel):
    """Device record as exposed to admins; never carries the key"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: UUID
    name: str
    firmware_version: str
    status: DeviceStatus
    slot_id: Optional[UUID] = None
    last_seen_at: Optional[datetime] = None
    key_rotated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class DeviceWithKey(BaseModel):
    """Response of device creation / key rotation: the only time the key is shown"""
    device: DeviceRead
    api_key: str


class IngestRequest(BaseModel):
    """Telemetry body sent by a device"""
    device_id: UUID
    api_key: Optional[str] = Field(None, min_length=1, max_length=128)
    event_type: EventKind
    is_occupied: Optional[bool] = None
    timestamp: Optional[datetime] = Field(None, description="Device clock, used for ordering")
    raw: Optional[Dict[str, Any]] = None


# ============================================================
# Response Models
# ============================================================

class DataResponse(BaseModel):
    data: Any


class MessageResponse(BaseModel):
    message: str
    data: Optional[Any] = None


class ListResponse(BaseModel):
    data: List[Any]
    count: int


class SweepResult(BaseModel):
    count: int
    expired: List[ReservationRead]
    devices_marked_offline: int = 0
    skipped: bool = False


class HealthStatus(BaseModel):
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    timestamp: datetime
    checks: Dict[str, str]
