"""
Job Queue
FIFO scheduler for generation jobs with a global concurrency bound

Each active job owns one full remote browser session, so the bound defaults
to 1. All bookkeeping (dedup registry, FIFO, active set) is mutated without
suspending between check and update; a single event loop needs no locks.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, Optional, Protocol, Set

import structlog

from app.exceptions import InfrastructureError, OrderNotFoundError, StaleOrderError, ValidationError
from app.models.order import Order, OrderStatus, PaymentStatus, statuses_entering
from app.services.generation.orchestrator import GenerationOutcome, GenerationState
from app.services.monitoring.error_tracking import ErrorSink
from app.services.order_store import OrderStore

logger = structlog.get_logger(__name__)

JOB_QUEUED = "queued"
JOB_ACTIVE = "active"


class Runner(Protocol):
    async def run(self, order_id: str) -> GenerationOutcome: ...


@dataclass
class Job:
    order_id: str
    queued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    state: str = JOB_QUEUED
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "state": self.state,
            "attempts": self.attempts,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass
class Enqueued:
    job: Job
    created: bool


class JobQueue:
    """
    Bounded-concurrency FIFO of generation jobs.

    Lifecycle: construct -> start() -> stop(). Jobs added before start() wait
    in the FIFO until the queue is started.
    """

    def __init__(
        self,
        runner: Runner,
        order_store: OrderStore,
        error_sink: ErrorSink,
        max_concurrent: int = 1,
        auto_retry_limit: int = 0,
        average_processing_seconds: float = 600.0
    ):
        """
        Args:
            runner: GenerationOrchestrator (anything with async run(order_id))
            order_store: Used to mark orders as queued
            error_sink: Audit log for runner crashes
            max_concurrent: Maximum number of simultaneously active jobs
            auto_retry_limit: Automatic re-runs of a failed job (0 = none)
            average_processing_seconds: Seed for the rolling wait estimate
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.runner = runner
        self.order_store = order_store
        self.error_sink = error_sink
        self.max_concurrent = max_concurrent
        self.auto_retry_limit = auto_retry_limit

        self._jobs: Dict[str, Job] = {}      # dedup registry: queued + active
        self._fifo: Deque[str] = deque()
        self._active: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._idle = asyncio.Event()
        self._idle.set()

        self._average_seconds = average_processing_seconds
        self._completed_runs = 0
        self.logger = logger.bind(service="job_queue")

    # Lifecycle

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.logger.info("job_queue_started", max_concurrent=self.max_concurrent, pending=len(self._fifo))
        self._drain()

    async def stop(self, wait: bool = True) -> None:
        """
        Stop draining.

        Args:
            wait: Await active jobs; when False they are cancelled (their
                sessions are still released by the orchestrator)
        """
        self._running = False
        tasks = list(self._tasks.values())
        if not wait:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("job_queue_stopped", pending=len(self._fifo), cancelled=not wait and bool(tasks))

    async def join(self) -> None:
        """Wait until nothing is queued or active"""
        await self._idle.wait()

    # Public API

    def contains(self, order_id: str) -> bool:
        return order_id in self._jobs

    async def add_job(self, order_id: str) -> Enqueued:
        """
        Enqueue a generation job.

        Duplicate calls for an order that is already queued or active are
        no-ops returning the existing job. Completed orders and orders with
        a bounced payment are never queued.

        Raises:
            ValidationError: ORDER_ALREADY_COMPLETED or ORDER_NOT_ELIGIBLE
            InfrastructureError: the order could not be marked as queued
            OrderNotFoundError: the order does not exist
        """
        existing = self._jobs.get(order_id)
        if existing is not None:
            self.logger.info("job_already_tracked", order_id=order_id, state=existing.state)
            return Enqueued(job=existing, created=False)

        # Register before the first await so concurrent callers see the job
        job = Job(order_id=order_id)
        self._jobs[order_id] = job
        self._idle.clear()

        try:
            order = await self.order_store.get(order_id)
            self._check_eligible(order)
            if self._jobs.get(order_id) is not job:
                # Discarded while the order was loading
                return Enqueued(job=job, created=False)
            await self.order_store.update(
                order_id,
                expected_status=statuses_entering(OrderStatus.QUEUED),
                status=OrderStatus.QUEUED
            )
        except (OrderNotFoundError, ValidationError):
            self._forget(order_id)
            raise
        except StaleOrderError as e:
            self._forget(order_id)
            self.logger.warning("job_rejected", order_id=order_id, status=e.status)
            raise ValidationError(e.message, code="ORDER_NOT_ELIGIBLE") from e
        except Exception as e:
            self._forget(order_id)
            await self.error_sink.log(e, {"order_id": order_id, "component": "JobQueue", "stage": "mark_queued"})
            if isinstance(e, InfrastructureError):
                raise
            raise InfrastructureError(f"Failed to queue order {order_id}: {e}") from e

        if self._jobs.get(order_id) is not job:
            # Discarded while the status write was in flight
            return Enqueued(job=job, created=False)

        self._fifo.append(order_id)
        self.logger.info("job_enqueued", order_id=order_id, queue_length=len(self._fifo))
        self._drain()
        return Enqueued(job=job, created=True)

    def _check_eligible(self, order: Order) -> None:
        if order.payment_status == PaymentStatus.PAYMENT_BOUNCED:
            self.logger.warning("job_rejected", order_id=order.order_id, reason="payment_bounced")
            raise ValidationError("Payment bounced for this order", code="ORDER_NOT_ELIGIBLE")
        if order.status == OrderStatus.COMPLETED:
            self.logger.warning("job_rejected", order_id=order.order_id, reason="already_completed")
            raise ValidationError("Video already generated for this order", code="ORDER_ALREADY_COMPLETED")

    def discard(self, order_id: str) -> bool:
        """
        Drop a job that is queued but not yet active.

        Returns:
            True if a queued job was removed
        """
        job = self._jobs.get(order_id)
        if job is None or job.state != JOB_QUEUED:
            return False
        if order_id in self._fifo:
            self._fifo.remove(order_id)
        self._forget(order_id)
        self.logger.info("job_discarded", order_id=order_id)
        return True

    def position(self, order_id: str) -> Optional[int]:
        """1-based FIFO position, 0 when active, None when unknown"""
        if order_id in self._active:
            return 0
        try:
            return self._fifo.index(order_id) + 1
        except ValueError:
            return None

    def estimated_wait_seconds(self, order_id: str) -> Optional[float]:
        """Advisory: position x average processing time"""
        position = self.position(order_id)
        if position is None:
            return None
        return position * self._average_seconds

    def get_status(self) -> dict:
        return {
            "queue_length": len(self._fifo),
            "active_jobs": sorted(self._active),
            "positions": {order_id: index + 1 for index, order_id in enumerate(self._fifo)},
            "is_processing": bool(self._active),
            "max_concurrent": self.max_concurrent,
            "average_processing_seconds": round(self._average_seconds, 2),
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }

    # Draining

    def _drain(self) -> None:
        """Start as many queued jobs as capacity allows (never suspends)"""
        if not self._running:
            return
        while self._fifo and len(self._active) < self.max_concurrent:
            order_id = self._fifo.popleft()
            job = self._jobs[order_id]
            job.state = JOB_ACTIVE
            job.started_at = datetime.now(timezone.utc)
            job.attempts += 1
            self._active.add(order_id)
            self._tasks[order_id] = asyncio.create_task(self._run(job), name=f"generation-{order_id}")
            self.logger.info("job_started", order_id=order_id, attempt=job.attempts, active=len(self._active))

    async def _run(self, job: Job) -> None:
        outcome: Optional[GenerationOutcome] = None
        try:
            outcome = await self.runner.run(job.order_id)
        except asyncio.CancelledError:
            self.logger.warning("job_cancelled", order_id=job.order_id)
            raise
        except Exception as e:
            self.logger.error("job_crashed", order_id=job.order_id, error=str(e), exc_info=True)
            await self.error_sink.log(e, {"order_id": job.order_id, "component": "JobQueue"})
        finally:
            self._settle(job, outcome)

    def _settle(self, job: Job, outcome: Optional[GenerationOutcome]) -> None:
        order_id = job.order_id
        self._active.discard(order_id)
        self._tasks.pop(order_id, None)

        if outcome is not None:
            self._record_duration(outcome.duration_seconds)

        retry = (
            self._running
            and outcome is not None
            and not outcome.succeeded
            and outcome.state != GenerationState.SKIPPED
            and job.attempts <= self.auto_retry_limit
        )
        if retry:
            # Stays registered (dedup, discard) while the status write runs
            job.state = JOB_QUEUED
            self._tasks[order_id] = asyncio.create_task(self._requeue(job, outcome), name=f"requeue-{order_id}")
        else:
            self._forget(order_id)
            self.logger.info(
                "job_settled",
                order_id=order_id,
                state=outcome.state.value if outcome else "crashed",
                queue_length=len(self._fifo)
            )

        self._drain()
        if not self._jobs:
            self._idle.set()

    async def _requeue(self, job: Job, outcome: GenerationOutcome) -> None:
        """Mark a failed order queued again, then put its job at the back of the FIFO"""
        order_id = job.order_id
        try:
            order = await self.order_store.get(order_id)
            self._check_eligible(order)
            await self.order_store.update(
                order_id,
                expected_status=statuses_entering(OrderStatus.QUEUED),
                status=OrderStatus.QUEUED
            )
        except Exception as e:
            if self._tasks.get(order_id) is asyncio.current_task():
                del self._tasks[order_id]
            if self._jobs.get(order_id) is job:
                self._forget(order_id)
            self.logger.warning("job_retry_abandoned", order_id=order_id, error=str(e))
            if not isinstance(e, (StaleOrderError, ValidationError)):
                await self.error_sink.log(e, {"order_id": order_id, "component": "JobQueue", "stage": "requeue"})
            return

        if self._tasks.get(order_id) is asyncio.current_task():
            del self._tasks[order_id]
        if self._jobs.get(order_id) is not job:
            # Discarded while the status write was in flight
            return

        self._fifo.append(order_id)
        self.logger.warning(
            "job_requeued_after_failure",
            order_id=order_id,
            attempts=job.attempts,
            retry_limit=self.auto_retry_limit,
            error=outcome.error
        )
        self._drain()

    def _forget(self, order_id: str) -> None:
        self._jobs.pop(order_id, None)
        if not self._jobs:
            self._idle.set()

    def _record_duration(self, seconds: float) -> None:
        # Rolling average, seeded by the configured estimate
        self._completed_runs += 1
        weight = 1 / min(self._completed_runs + 1, 20)
        self._average_seconds = (1 - weight) * self._average_seconds + weight * seconds
