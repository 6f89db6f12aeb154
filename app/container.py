"""
Service Container
Explicit construction and lifecycle of the orchestration services

build_container() wires every service from Settings; the FastAPI app starts
and stops the container on startup/shutdown. Tests build their own container
with in-memory stores and a fake agent.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings
from app.services.event_log import EventLog, InMemoryEventLog, SqlEventLog
from app.services.generation import Credentials, GenerationOrchestrator, HttpRenderingAgent, RenderingAgent
from app.services.job_queue import JobQueue
from app.services.monitoring.error_tracking import ErrorSink
from app.services.notification_dispatcher import (
    InMemoryNotificationFailureStore,
    NotificationDispatcher,
    NotificationFailureStore,
    SqlNotificationFailureStore,
)
from app.services.notification_transport import NotificationTransport, build_transport
from app.services.order_store import InMemoryOrderStore, OrderStore, SqlOrderStore
from app.services.video_requests import VideoRequestService
from app.services.webhook_ingestor import BouncePolicy, WebhookIngestor

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    order_store: OrderStore
    event_log: EventLog
    error_sink: ErrorSink
    agent: RenderingAgent
    transport: NotificationTransport
    failure_store: NotificationFailureStore
    dispatcher: NotificationDispatcher
    orchestrator: GenerationOrchestrator
    job_queue: JobQueue
    ingestor: WebhookIngestor
    video_requests: VideoRequestService
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        self.dispatcher.start()
        self.job_queue.start()
        self.started = True
        logger.info("services_started")

    async def stop(self) -> None:
        """Cancel active generations (sessions are released) and drain notifications"""
        if not self.started:
            return
        await self.job_queue.stop(wait=False)
        await self.dispatcher.stop(drain=True)
        aclose = getattr(self.agent, "aclose", None)
        if aclose is not None:
            await aclose()
        self.started = False
        logger.info("services_stopped")


def build_container(
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    agent: Optional[RenderingAgent] = None,
    transport: Optional[NotificationTransport] = None
) -> ServiceContainer:
    """
    Wire the services.

    Args:
        settings: Application settings
        session_factory: async_sessionmaker; None selects the in-memory stores
        agent: RenderingAgent override (defaults to the HTTP sidecar agent)
        transport: NotificationTransport override (defaults to Resend or log-only)
    """
    if session_factory is not None:
        order_store = SqlOrderStore(session_factory)
        event_log = SqlEventLog(session_factory)
        failure_store = SqlNotificationFailureStore(session_factory)
    else:
        order_store = InMemoryOrderStore()
        event_log = InMemoryEventLog()
        failure_store = InMemoryNotificationFailureStore()

    error_sink = ErrorSink(session_factory)

    if agent is None:
        agent = HttpRenderingAgent(
            base_url=settings.render_agent_url,
            token=settings.render_agent_token,
            timeout=settings.render_agent_request_timeout
        )
    if transport is None:
        transport = build_transport(settings.resend_api_key, settings.notification_from)

    if not settings.sora_email or not settings.sora_password:
        logger.warning("generation_credentials_not_configured")

    dispatcher = NotificationDispatcher(
        transport=transport,
        error_sink=error_sink,
        failure_store=failure_store,
        max_retries=settings.notification_max_retries,
        retry_delay=settings.notification_retry_delay_seconds
    )
    orchestrator = GenerationOrchestrator(
        agent=agent,
        order_store=order_store,
        notifier=dispatcher,
        error_sink=error_sink,
        credentials=Credentials(email=settings.sora_email or "", password=settings.sora_password or ""),
        poll_interval=settings.generation_poll_interval_seconds,
        poll_timeout=settings.generation_timeout_seconds,
        purge_every=settings.generation_purge_every_ticks
    )
    job_queue = JobQueue(
        runner=orchestrator,
        order_store=order_store,
        error_sink=error_sink,
        max_concurrent=settings.generation_max_concurrent,
        auto_retry_limit=settings.generation_auto_retry_limit,
        average_processing_seconds=settings.generation_average_seconds
    )
    ingestor = WebhookIngestor(
        event_log=event_log,
        order_store=order_store,
        job_queue=job_queue,
        error_sink=error_sink,
        secret=settings.webhook_secret,
        bounce_policy=BouncePolicy(settings.bounce_policy)
    )

    logger.info(
        "services_built",
        storage="postgresql" if session_factory is not None else "memory",
        max_concurrent=settings.generation_max_concurrent,
        bounce_policy=settings.bounce_policy
    )

    return ServiceContainer(
        settings=settings,
        order_store=order_store,
        event_log=event_log,
        error_sink=error_sink,
        agent=agent,
        transport=transport,
        failure_store=failure_store,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        job_queue=job_queue,
        ingestor=ingestor,
        video_requests=VideoRequestService(order_store, job_queue)
    )
