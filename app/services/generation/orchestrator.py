"""
Generation Orchestrator
Drives one order through the generation protocol against a RenderingAgent

State machine per job:

    AUTHENTICATING -> CONFIGURING -> SUBMITTING -> POLLING -> SUCCEEDED
                                                           -> FAILED
                                                           -> TIMED_OUT

Every exit path releases the agent session exactly once. Failures never
escape run(); they are recorded on the order and in the ErrorSink and
returned as a GenerationOutcome. Cancellation propagates after cleanup.

Status writes are guarded on the order's current status. If the order
left `processing` while the job ran (a payment bounce marks it failed),
the result is discarded and the run ends SKIPPED without notifying.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

import structlog

from app.exceptions import (
    AuthFailure,
    ConfigFailure,
    GenerationError,
    PollTimeout,
    StaleOrderError,
    SubmitFailure,
)
from app.models.order import Order, OrderStatus, PaymentStatus, statuses_entering
from app.services.generation.agent import (
    ArtifactRef,
    Credentials,
    GenerationParams,
    RenderingAgent,
    Session,
)
from app.services.monitoring.error_tracking import ErrorSink, add_breadcrumb, set_order_context
from app.services.order_store import OrderStore

logger = structlog.get_logger(__name__)


class GenerationState(str, Enum):
    AUTHENTICATING = "authenticating"
    CONFIGURING = "configuring"
    SUBMITTING = "submitting"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class Notifier(Protocol):
    def enqueue(self, recipient: str, payload: dict): ...


@dataclass
class GenerationOutcome:
    order_id: str
    state: GenerationState
    video_url: Optional[str] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state == GenerationState.SUCCEEDED


@dataclass
class _Run:
    order_id: str
    started: float
    state: GenerationState = GenerationState.AUTHENTICATING
    generation_started: Optional[float] = None
    session: Optional[Session] = field(default=None, repr=False)


class GenerationOrchestrator:
    """
    Runs the generation protocol for one order at a time per call.

    Concurrency across orders is owned by the JobQueue, not by this class.
    """

    def __init__(
        self,
        agent: RenderingAgent,
        order_store: OrderStore,
        notifier: Notifier,
        error_sink: ErrorSink,
        credentials: Credentials,
        poll_interval: float = 10.0,
        poll_timeout: float = 2400.0,
        purge_every: int = 5
    ):
        """
        Args:
            agent: RenderingAgent implementation
            order_store: Order persistence
            notifier: Receives the "video ready" notification on success
            error_sink: Audit log for caught failures
            credentials: Login for the remote generation site
            poll_interval: Seconds between artifact checks
            poll_timeout: Seconds before polling gives up (TIMED_OUT)
            purge_every: Purge session caches every N polling ticks
        """
        self.agent = agent
        self.order_store = order_store
        self.notifier = notifier
        self.error_sink = error_sink
        self.credentials = credentials
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.purge_every = purge_every
        self.logger = logger.bind(service="generation_orchestrator")

    async def run(self, order_id: str) -> GenerationOutcome:
        """
        Generate the video for one order and record the result.

        Args:
            order_id: Order to process

        Returns:
            GenerationOutcome describing the terminal state
        """
        loop = asyncio.get_running_loop()
        run = _Run(order_id=order_id, started=loop.time())
        log = self.logger.bind(order_id=order_id)
        set_order_context(order_id, "GenerationOrchestrator")

        try:
            order = await self.order_store.get(order_id)
        except Exception as e:
            await self.error_sink.log(e, {"order_id": order_id, "component": "GenerationOrchestrator", "stage": "load_order"})
            return self._outcome(run, GenerationState.FAILED, error=str(e))

        if order.payment_status == PaymentStatus.PAYMENT_BOUNCED:
            log.warning("generation_skipped_payment_bounced")
            return self._outcome(run, GenerationState.SKIPPED, error="Payment bounced")

        try:
            order = await self.order_store.update(
                order_id,
                expected_status=statuses_entering(OrderStatus.PROCESSING),
                status=OrderStatus.PROCESSING,
                started_at=datetime.now(timezone.utc),
                error=None
            )
        except StaleOrderError as e:
            log.warning("generation_skipped_status_changed", status=e.status)
            return self._outcome(run, GenerationState.SKIPPED, error=e.message)
        except Exception as e:
            await self.error_sink.log(e, {"order_id": order_id, "component": "GenerationOrchestrator", "stage": "mark_processing"})
            return self._outcome(run, GenerationState.FAILED, error=str(e))

        log.info("generation_started", prompt_length=len(order.prompt or ""))

        try:
            try:
                artifact = await self._generate(run, order, log)
            finally:
                await self._release(run, log)
        except GenerationError as e:
            return await self._fail(run, e, log)
        except Exception as e:
            return await self._fail(run, GenerationError(str(e) or type(e).__name__), log, cause=e)

        return await self._succeed(run, order, artifact, log)

    async def _generate(self, run: _Run, order: Order, log) -> ArtifactRef:
        """Authenticate, configure, submit and poll. Raises GenerationError subtypes."""
        loop = asyncio.get_running_loop()

        # AUTHENTICATING
        run.state = GenerationState.AUTHENTICATING
        add_breadcrumb("generation", "authenticating", data={"order_id": run.order_id})
        try:
            run.session = await self.agent.authenticate(self.credentials, label=run.order_id)
        except Exception as e:
            raise AuthFailure(f"Login to generation site failed: {e}") from e

        # CONFIGURING
        run.state = GenerationState.CONFIGURING
        params = GenerationParams(
            prompt=order.prompt,
            resolution=order.resolution,
            duration=order.duration,
            aspect_ratio=order.aspect_ratio
        )
        try:
            report = await self.agent.configure(run.session, params)
        except Exception as e:
            raise ConfigFailure(f"Failed to configure generation options: {e}") from e

        for option, verified in report.items():
            if not verified:
                # Soft failure: the artifact check at the end is the real verification
                log.warning("option_not_verified", option=option, value=params.options().get(option))

        # SUBMITTING
        run.state = GenerationState.SUBMITTING
        try:
            started = await self.agent.submit(run.session, order.prompt)
        except Exception as e:
            raise SubmitFailure(f"Failed to submit prompt: {e}") from e

        if not started:
            log.warning("generation_start_not_confirmed", strategies=list(self.agent.trigger_strategies()))

        # POLLING
        run.state = GenerationState.POLLING
        run.generation_started = loop.time()
        add_breadcrumb("generation", "polling", data={"order_id": run.order_id})
        log.info("generation_polling", interval=self.poll_interval, timeout=self.poll_timeout)

        artifact = await self.agent.poll_for_artifact(
            run.session,
            match_key=order.prompt,
            interval=self.poll_interval,
            timeout=self.poll_timeout,
            purge_every=self.purge_every
        )
        if artifact is None:
            run.state = GenerationState.TIMED_OUT
            raise PollTimeout(self.poll_timeout)

        return artifact

    async def _release(self, run: _Run, log) -> None:
        if run.session is None:
            return
        try:
            await self.agent.release(run.session)
            log.info("session_released", session_id=run.session.session_id, state=run.state.value)
        except Exception as e:
            await self.error_sink.log(e, {"order_id": run.order_id, "component": "GenerationOrchestrator", "stage": "release"})

    async def _succeed(self, run: _Run, order: Order, artifact: ArtifactRef, log) -> GenerationOutcome:
        loop = asyncio.get_running_loop()
        now = loop.time()
        processing_seconds = now - run.started
        generation_seconds = now - run.generation_started if run.generation_started else None

        try:
            await self.order_store.update(
                run.order_id,
                expected_status=[OrderStatus.PROCESSING],
                status=OrderStatus.COMPLETED,
                video_url=artifact.url,
                completed_at=datetime.now(timezone.utc),
                processing_time_seconds=processing_seconds,
                generation_time_seconds=generation_seconds,
                error=None
            )
        except StaleOrderError as e:
            return self._discard(run, e, log, video_url=artifact.url)
        except Exception as e:
            return await self._fail(run, GenerationError(f"Failed to record generated video: {e}"), log, cause=e)

        run.state = GenerationState.SUCCEEDED
        log.info(
            "generation_completed",
            video_url=artifact.url,
            processing_seconds=round(processing_seconds, 2),
            generation_seconds=round(generation_seconds, 2) if generation_seconds else None
        )

        self._notify(order, artifact, log)
        return self._outcome(run, GenerationState.SUCCEEDED, video_url=artifact.url)

    def _notify(self, order: Order, artifact: ArtifactRef, log) -> None:
        # A lost notification must not turn a delivered video into a failed order
        if not order.email:
            log.warning("notification_skipped", reason="order_has_no_email")
            return
        try:
            self.notifier.enqueue(order.email, {
                "order_id": order.order_id,
                "video_url": artifact.url,
                "prompt": order.prompt,
                "resolution": order.resolution,
                "duration": order.duration,
            })
        except Exception as e:
            log.error("notification_enqueue_failed", error=str(e), exc_info=True)

    async def _fail(self, run: _Run, error: GenerationError, log, cause: Optional[BaseException] = None) -> GenerationOutcome:
        state = GenerationState.TIMED_OUT if isinstance(error, PollTimeout) else GenerationState.FAILED
        failed_in = run.state.value
        run.state = state
        message = str(error) or type(error).__name__
        log.error("generation_failed", state=state.value, failed_in=failed_in, error=message, code=error.code)

        await self.error_sink.log(cause or error, {
            "order_id": run.order_id,
            "component": "GenerationOrchestrator",
            "state": failed_in,
            "code": error.code,
        })

        loop = asyncio.get_running_loop()
        try:
            await self.order_store.update(
                run.order_id,
                expected_status=[OrderStatus.PROCESSING],
                status=OrderStatus.FAILED,
                error=message,
                processing_time_seconds=loop.time() - run.started
            )
        except StaleOrderError as e:
            return self._discard(run, e, log)
        except Exception as e:
            await self.error_sink.log(e, {"order_id": run.order_id, "component": "GenerationOrchestrator", "stage": "mark_failed"})

        return self._outcome(run, state, error=message)

    def _discard(self, run: _Run, stale: StaleOrderError, log, video_url: Optional[str] = None) -> GenerationOutcome:
        # The order was moved on (bounced) while generating; its status stands
        log.warning(
            "generation_result_discarded",
            state=run.state.value,
            status=stale.status,
            video_url=video_url
        )
        return self._outcome(run, GenerationState.SKIPPED, error=stale.message)

    def _outcome(self, run: _Run, state: GenerationState, video_url: Optional[str] = None, error: Optional[str] = None) -> GenerationOutcome:
        loop = asyncio.get_running_loop()
        return GenerationOutcome(
            order_id=run.order_id,
            state=state,
            video_url=video_url,
            error=error,
            duration_seconds=loop.time() - run.started
        )
