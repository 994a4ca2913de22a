"""
Slots Router - slot registry CRUD and maintenance toggle
Any authenticated caller can read; writes require the admin role
"""
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from ..auth import Caller
from ..dependencies import ServiceContainer, get_caller, get_services, require_admin
from ..models import SlotStatus, SlotType
from ..schemas import MaintenanceRequest, SlotCreate, SlotRead, SlotUpdate

router = APIRouter(prefix="/slots", tags=["slots"])
logger = logging.getLogger(__name__)


def _serialize(slot) -> Dict[str, Any]:
    return SlotRead.model_validate(slot).model_dump(mode="json")


@router.get("")
async def list_slots(
    status_filter: Optional[SlotStatus] = Query(None, alias="status", description="Filter by current status"),
    zone: Optional[str] = Query(None, description="Filter by zone"),
    slot_type: Optional[SlotType] = Query(None, description="Filter by slot type"),
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    slots = await services.slots.list_slots(status=status_filter, zone=zone, slot_type=slot_type)
    return {"data": [_serialize(s) for s in slots], "count": len(slots)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_slot(
    body: SlotCreate,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    slot = await services.slots.create_slot(caller, body.code, body.zone, body.slot_type)
    return {"data": _serialize(slot)}


@router.get("/{slot_id}")
async def get_slot(
    slot_id: UUID,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    slot = await services.slots.get_slot(slot_id)
    return {"data": _serialize(slot)}


@router.patch("/{slot_id}")
async def update_slot(
    slot_id: UUID,
    body: SlotUpdate,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    slot = await services.slots.update_slot(caller, slot_id, body.model_dump(exclude_unset=True))
    return {"data": _serialize(slot)}


@router.delete("/{slot_id}")
async def delete_slot(
    slot_id: UUID,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    await services.slots.delete_slot(caller, slot_id)
    return {"message": "Slot deleted"}


@router.post("/{slot_id}/maintenance")
async def set_maintenance(
    slot_id: UUID,
    body: MaintenanceRequest,
    caller: Caller = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Put a slot into maintenance or bring it back"""
    slot = await services.slots.set_maintenance(caller, slot_id, body.enabled)
    message = "Slot in maintenance" if body.enabled else "Slot back in service"
    return {"message": message, "data": _serialize(slot)}
