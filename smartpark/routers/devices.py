"""
Devices Router - admin device registry and the telemetry ingest endpoint
"""
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

import pydantic
from fastapi import APIRouter, Depends, Header, Request, status

from ..auth import Caller
from ..dependencies import ServiceContainer, get_services, require_admin
from ..exceptions import ValidationError
from ..schemas import DeviceCreate, DeviceRead, DeviceUpdate, DeviceWithKey, IngestRequest

router = APIRouter(prefix="/devices", tags=["devices"])
logger = logging.getLogger(__name__)


def _serialize(device) -> Dict[str, Any]:
    return DeviceRead.model_validate(device).model_dump(mode="json")


def _with_key(device, api_key: str) -> Dict[str, Any]:
    return DeviceWithKey(device=DeviceRead.model_validate(device), api_key=api_key).model_dump(mode="json")


def _loose_uuid(value) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


# ============================================================
# Telemetry ingest (device credential, no bearer token)
# ============================================================

@router.post("/ingest")
async def ingest(
    request: Request,
    x_device_key: Optional[str] = Header(None, alias="X-Device-Key"),
    services: ServiceContainer = Depends(get_services),
):
    """
    Accept one device event

    The key may come in the body (api_key) or the X-Device-Key header.
    Malformed payloads get 400; when their credential still verifies they
    are recorded as rejected events for audit.
    """
    body = await request.body()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("body", "request body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("body", "request body must be a JSON object")

    try:
        event = IngestRequest.model_validate(payload)
    except pydantic.ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "error": err["msg"]}
            for err in e.errors(include_url=False)
        ]
        key = payload.get("api_key") if isinstance(payload.get("api_key"), str) else x_device_key
        await services.reconciler.record_rejected(
            _loose_uuid(payload.get("device_id")),
            key,
            {k: v for k, v in payload.items() if k != "api_key"},
            note=f"malformed payload: {errors}",
            kind=payload.get("event_type") if isinstance(payload.get("event_type"), str) else None,
        )
        raise ValidationError(errors[0]["field"] or "body", errors[0]["error"])

    recorded = await services.reconciler.ingest_event(
        event.device_id,
        event.api_key or x_device_key,
        event.event_type,
        occupied=event.is_occupied,
        recorded_at=event.timestamp,
        raw=event.raw,
    )
    return {"ok": True, "event_id": str(recorded.id), "applied": recorded.accepted}


# ============================================================
# Registry (admin)
# ============================================================

@router.get("")
async def list_devices(
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    devices = await services.devices.list_devices(caller)
    return {"data": [_serialize(d) for d in devices], "count": len(devices)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_device(
    body: DeviceCreate,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Register a device; the response is the only place its key appears"""
    device, api_key = await services.devices.create_device(
        caller, body.name, body.firmware_version, body.slot_id
    )
    return {"data": _with_key(device, api_key)}


@router.get("/{device_id}")
async def get_device(
    device_id: UUID,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    device = await services.devices.get_device(caller, device_id)
    return {"data": _serialize(device)}


@router.patch("/{device_id}")
async def update_device(
    device_id: UUID,
    body: DeviceUpdate,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    changes = {field: getattr(body, field) for field in body.model_fields_set}
    device = await services.devices.update_device(caller, device_id, changes)
    return {"data": _serialize(device)}


@router.delete("/{device_id}")
async def delete_device(
    device_id: UUID,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    await services.devices.delete_device(caller, device_id)
    return {"message": "Device deleted"}


@router.post("/{device_id}/rotate-key")
async def rotate_key(
    device_id: UUID,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    device, api_key = await services.devices.rotate_key(caller, device_id)
    return {"message": "Device key rotated", "data": _with_key(device, api_key)}
