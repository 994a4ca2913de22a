"""
Internal Router - service-to-service triggers (X-Service-Key)
"""
import logging

from fastapi import APIRouter, Depends

from ..dependencies import ServiceContainer, get_services, require_service_key
from ..schemas import ReservationRead, SweepResult

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_service_key)])
logger = logging.getLogger(__name__)


@router.post("/sweep", response_model=SweepResult)
async def trigger_sweep(services: ServiceContainer = Depends(get_services)):
    """Run one expiry sweep now; skipped when a sweep is already in progress"""
    report = await services.sweeper.run_once()
    logger.info(f"Manual sweep: expired={report.count} skipped={report.skipped}")
    return SweepResult(
        count=report.count,
        expired=[ReservationRead.model_validate(r) for r in report.expired],
        devices_marked_offline=report.devices_marked_offline,
        skipped=report.skipped,
    )
