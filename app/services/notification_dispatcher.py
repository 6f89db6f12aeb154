"""
Notification Dispatcher
Retrying FIFO that delivers "video ready" notifications one at a time

A single worker task sends jobs in enqueue order. A failed job goes to the
back of the queue with retry_count + 1 and is not attempted again before
retry_delay has elapsed. After max_retries retries the job is written to the
permanent failure store exactly once and dropped.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.error_log import NotificationFailure
from app.services.monitoring.error_tracking import ErrorSink
from app.services.notification_transport import NotificationTransport

logger = structlog.get_logger(__name__)


@dataclass
class NotificationJob:
    recipient: str
    payload: dict
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    retry_count: int = 0
    next_attempt_at: float = 0.0  # event loop clock
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_error: Optional[str] = None


class NotificationFailureStore(Protocol):
    async def record(self, job: NotificationJob) -> None: ...


class SqlNotificationFailureStore:
    """Writes permanent failures to the email_failures table"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self, job: NotificationJob) -> None:
        async with self.session_factory() as session:
            session.add(NotificationFailure(
                recipient=job.recipient,
                payload=job.payload,
                error_message=job.last_error,
                retry_count=job.retry_count,
                added_at=job.added_at
            ))
            await session.commit()


class InMemoryNotificationFailureStore:
    def __init__(self):
        self.failures: List[NotificationJob] = []

    async def record(self, job: NotificationJob) -> None:
        self.failures.append(job)


class NotificationDispatcher:
    """
    Single-worker retrying notification queue.

    Lifecycle: construct -> start() -> stop(). enqueue() may be called
    before start(); jobs wait until the worker runs.
    """

    def __init__(
        self,
        transport: NotificationTransport,
        error_sink: ErrorSink,
        failure_store: NotificationFailureStore,
        max_retries: int = 3,
        retry_delay: float = 5.0
    ):
        """
        Args:
            transport: Delivers one notification or raises
            error_sink: Audit log for permanent failures
            failure_store: Receives each permanently failed job once
            max_retries: Retries after the first failed attempt
            retry_delay: Seconds before a failed job may be attempted again
        """
        self.transport = transport
        self.error_sink = error_sink
        self.failure_store = failure_store
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._queue: Deque[NotificationJob] = deque()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._worker: Optional[asyncio.Task] = None
        self._stopping = False
        self._processing = False
        self.sent_count = 0
        self.permanent_failures = 0
        self.logger = logger.bind(service="notification_dispatcher")

    # Lifecycle

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._worker = asyncio.create_task(self._work(), name="notification-dispatcher")
        self.logger.info("notification_dispatcher_started", pending=len(self._queue))

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the worker.

        Args:
            drain: Deliver (or permanently fail) the remaining jobs first
        """
        if self._worker is None:
            return
        self._stopping = True
        if drain:
            self._wakeup.set()
            await self._worker
        else:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self.logger.info("notification_dispatcher_stopped", pending=len(self._queue), drained=drain)

    async def join(self) -> None:
        """Wait until every enqueued job was delivered or permanently failed"""
        await self._idle.wait()

    # Public API

    def enqueue(self, recipient: str, payload: dict) -> NotificationJob:
        job = NotificationJob(recipient=recipient, payload=dict(payload))
        self._queue.append(job)
        self._idle.clear()
        self._wakeup.set()
        self.logger.info(
            "notification_enqueued",
            job_id=job.id,
            order_id=payload.get("order_id"),
            queue_length=len(self._queue)
        )
        return job

    def get_status(self) -> dict:
        return {
            "queue_length": len(self._queue),
            "retrying": sum(1 for job in self._queue if job.retry_count > 0),
            "permanent_failures": self.permanent_failures,
            "sent": self.sent_count,
            "is_processing": self._processing,
        }

    # Worker

    def _next_eligible(self, now: float) -> Optional[NotificationJob]:
        for job in self._queue:
            if job.next_attempt_at <= now:
                return job
        return None

    async def _work(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            if not self._queue:
                self._idle.set()
                if self._stopping:
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            now = loop.time()
            job = self._next_eligible(now)
            if job is None:
                delay = min(item.next_attempt_at for item in self._queue) - now
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
                continue

            self._queue.remove(job)
            self._processing = True
            try:
                await self._attempt(job, loop)
            finally:
                self._processing = False

    async def _attempt(self, job: NotificationJob, loop: asyncio.AbstractEventLoop) -> None:
        order_id = job.payload.get("order_id")
        try:
            delivery_id = await self.transport.send(job.recipient, job.payload)
        except Exception as e:
            job.last_error = str(e) or type(e).__name__
            if job.retry_count < self.max_retries:
                job.retry_count += 1
                job.next_attempt_at = loop.time() + self.retry_delay
                self._queue.append(job)
                self.logger.warning(
                    "notification_retry_scheduled",
                    job_id=job.id,
                    order_id=order_id,
                    retry_count=job.retry_count,
                    max_retries=self.max_retries,
                    error=job.last_error
                )
                return
            await self._fail_permanently(job, e)
            return

        self.sent_count += 1
        self.logger.info(
            "notification_delivered",
            job_id=job.id,
            order_id=order_id,
            delivery_id=delivery_id,
            retry_count=job.retry_count
        )

    async def _fail_permanently(self, job: NotificationJob, error: Exception) -> None:
        self.permanent_failures += 1
        self.logger.error(
            "notification_failed_permanently",
            job_id=job.id,
            order_id=job.payload.get("order_id"),
            retry_count=job.retry_count,
            error=job.last_error
        )
        await self.error_sink.log(error, {
            "component": "NotificationDispatcher",
            "order_id": job.payload.get("order_id"),
            "retry_count": job.retry_count,
        })
        try:
            await self.failure_store.record(job)
        except Exception as e:
            await self.error_sink.log(e, {"component": "NotificationDispatcher", "stage": "record_failure"})
