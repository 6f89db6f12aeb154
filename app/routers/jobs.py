"""
Queue Status API Router
Provides REST endpoints for queue visibility and manual recovery
"""

import structlog
from fastapi import APIRouter, Depends

from app.container import ServiceContainer
from app.routers.dependencies import get_container, require_api_key

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["jobs"])


@router.get("/queue")
async def get_queue_status(container: ServiceContainer = Depends(get_container)):
    """
    Generation queue and notification dispatcher status

    Returns:
        dict with "generation" (JobQueue) and "notifications" (dispatcher) sections
    """
    return {
        "generation": container.job_queue.get_status(),
        "notifications": container.dispatcher.get_status(),
    }


@router.post("/admin/recovery/trigger", dependencies=[Depends(require_api_key)])
async def trigger_recovery(container: ServiceContainer = Depends(get_container)):
    """
    Run stranded order recovery immediately instead of waiting for the schedule

    Returns:
        dict: scanned / requeued / skipped / failed counts
    """
    from app.scheduler import recover_stranded_orders

    result = await recover_stranded_orders(container)
    logger.info("manual_recovery_triggered", **result)
    return {"status": "completed", "result": result}
