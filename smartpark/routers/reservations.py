"""
Reservations Router
Driver-facing create / cancel / check-in / complete plus listing
"""
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from ..auth import Caller
from ..dependencies import ServiceContainer, get_caller, get_services
from ..exceptions import InvalidStateError
from ..models import ReservationStatus
from ..schemas import ReservationCreateRequest, ReservationRead

router = APIRouter(prefix="/reservations", tags=["reservations"])
logger = logging.getLogger(__name__)


def _serialize(reservation) -> Dict[str, Any]:
    return ReservationRead.model_validate(reservation).model_dump(mode="json")


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_reservation(
    body: ReservationCreateRequest,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    """
    Reserve a slot for the authenticated driver

    409 when the driver or the slot already has an open reservation,
    400 when the slot is not available.
    """
    reservation = await services.engine.create_reservation(
        caller.user_id, body.slot_id, body.expires_in_minutes
    )
    return {"data": _serialize(reservation)}


@router.post("/cancel/{reservation_id}")
async def cancel_reservation(
    reservation_id: UUID,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    """
    Cancel an open reservation (owner or admin)

    Cancelling twice returns the cancelled record; completed or expired
    reservations cannot be cancelled.
    """
    reservation = await services.engine.cancel_reservation(
        caller.user_id, reservation_id, caller.is_admin
    )
    if reservation.status != ReservationStatus.CANCELLED.value:
        raise InvalidStateError(
            f"Reservation is {reservation.status} and cannot be cancelled",
            current_state=reservation.status,
        )
    return {"message": "Reservation cancelled", "data": _serialize(reservation)}


@router.post("/checkin/{reservation_id}")
async def check_in(
    reservation_id: UUID,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    reservation = await services.engine.check_in(caller.user_id, reservation_id, caller.is_admin)
    return {"message": "Checked in", "data": _serialize(reservation)}


@router.post("/complete/{reservation_id}")
async def complete_reservation(
    reservation_id: UUID,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    reservation = await services.engine.complete_reservation(caller.user_id, reservation_id, caller.is_admin)
    return {"message": "Reservation completed", "data": _serialize(reservation)}


@router.get("")
async def list_reservations(
    status_filter: Optional[ReservationStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    """Drivers see their own reservations; admins see everyone's"""
    reservations = await services.engine.list_reservations(
        caller.user_id, caller.is_admin, status_filter, limit, offset
    )
    logger.debug(f"List reservations for {caller.user_id}: count={len(reservations)}")
    return {"data": [_serialize(r) for r in reservations], "count": len(reservations)}


@router.get("/{reservation_id}")
async def get_reservation(
    reservation_id: UUID,
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    reservation = await services.engine.get_reservation(caller.user_id, reservation_id, caller.is_admin)
    return {"data": _serialize(reservation)}
