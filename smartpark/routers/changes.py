"""
Change feed poll endpoint
"""
from fastapi import APIRouter, Depends, Query

from ..auth import Caller
from ..dependencies import ServiceContainer, get_caller, get_services
from ..events import ENTITY_RESERVATION, ENTITY_SLOT

router = APIRouter(prefix="/changes", tags=["changes"])


def _visible(change, caller: Caller) -> bool:
    """Drivers see slot changes and their own reservations"""
    if caller.is_admin or change.entity == ENTITY_SLOT:
        return True
    return change.entity == ENTITY_RESERVATION and change.data.get("user_id") == caller.user_id


@router.get("")
async def poll_changes(
    since: int = Query(0, ge=0, description="Return events with seq greater than this"),
    limit: int = Query(100, ge=1, le=1000),
    caller: Caller = Depends(get_caller),
    services: ServiceContainer = Depends(get_services),
):
    changes = services.feed.since(since, limit)
    return {
        "data": [c.to_dict() for c in changes if _visible(c, caller)],
        "last_seq": changes[-1].seq if changes else since,
        "head": services.feed.last_seq,
    }
