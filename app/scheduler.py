"""
APScheduler Background Jobs

Stranded order recovery: the JobQueue lives in memory, so paid orders that
were pending or queued when the process stopped are re-added on a schedule.
Jobs run via AsyncIOScheduler on the FastAPI event loop.
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.container import ServiceContainer
from app.exceptions import ValidationError
from app.middleware.correlation_id import start_correlation
from app.models.order import OrderStatus, PaymentStatus

logger = structlog.get_logger(__name__)

RECOVERABLE_STATUSES = [OrderStatus.PENDING_GENERATION, OrderStatus.QUEUED]


async def recover_stranded_orders(container: ServiceContainer) -> dict:
    """
    Re-add paid orders the JobQueue does not know about.

    The scanned list can go stale while earlier orders are re-added; the
    JobQueue re-checks each order and rejects completed or bounced ones.

    Returns:
        dict with counts of scanned, requeued, skipped and failed orders
    """
    start_correlation("recovery")
    result = {"scanned": 0, "requeued": 0, "skipped": 0, "failed": 0}

    try:
        orders = await container.order_store.list_by_status(
            RECOVERABLE_STATUSES,
            payment_status=PaymentStatus.PAYMENT_COMPLETED
        )
    except Exception as e:
        logger.error("recovery_scan_failed", error=str(e))
        await container.error_sink.log(e, {"component": "Scheduler", "stage": "recovery_scan"})
        return result

    for order in orders:
        result["scanned"] += 1
        if container.job_queue.contains(order.order_id):
            continue
        try:
            await container.job_queue.add_job(order.order_id)
            result["requeued"] += 1
            logger.info("stranded_order_requeued", order_id=order.order_id, status=order.status)
        except ValidationError as e:
            result["skipped"] += 1
            logger.info("stranded_order_skipped", order_id=order.order_id, code=e.code)
        except Exception as e:
            result["failed"] += 1
            logger.error("stranded_order_requeue_failed", order_id=order.order_id, error=str(e))

    logger.info("recovery_completed", **result)
    return result


def start_scheduler(container: ServiceContainer) -> Optional[AsyncIOScheduler]:
    """
    Start the scheduler with the recovery job.

    Must be called from a running event loop. Returns None in testing.
    """
    settings = container.settings
    if settings.environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return None

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        recover_stranded_orders,
        trigger=IntervalTrigger(minutes=settings.recovery_interval_minutes),
        args=[container],
        id="stranded_order_recovery",
        name="Stranded Order Recovery",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    scheduler.start()
    logger.info("scheduler_started", job="stranded_order_recovery", interval_minutes=settings.recovery_interval_minutes)
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: AsyncIOScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "recover_stranded_orders",
    "start_scheduler",
    "stop_scheduler",
]
