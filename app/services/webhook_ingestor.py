"""
Webhook Ingestor
Admits payment webhook events exactly once and applies them to orders

Flow per event:
1. verify() - bearer token against WEBHOOK_SECRET (caller answers 401)
2. EventLog admission by idempotency key (duplicate -> no-op)
3. Dispatch by event type onto the OrderStore / JobQueue

The sender is acknowledged before step 2 runs; nothing after verify()
surfaces to it.
"""

import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from app.exceptions import AuthenticationError, DuplicateEventError, OrderNotFoundError
from app.models.order import OrderStatus, PaymentStatus
from app.models.webhook_schemas import PaymentWebhookEvent
from app.services.event_log import EventLog, generate_idempotency_key
from app.services.job_queue import JobQueue
from app.services.monitoring.error_tracking import ErrorSink, add_breadcrumb
from app.services.order_store import OrderStore

logger = structlog.get_logger(__name__)

BOUNCED_ERROR = "Payment bounced"


class BouncePolicy(str, Enum):
    ALWAYS = "always"
    UNLESS_COMPLETED = "unless_completed"


class EventType(str, Enum):
    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_BOUNCED = "payment_bounced"


@dataclass
class IngestResult:
    status: str  # processed | duplicate | ignored | failed
    idempotency_key: str
    event_type: str
    payment_id: str
    action: Optional[str] = None
    error: Optional[str] = None


class WebhookIngestor:
    """
    Authoritative payment webhook state machine.
    """

    def __init__(
        self,
        event_log: EventLog,
        order_store: OrderStore,
        job_queue: JobQueue,
        error_sink: ErrorSink,
        secret: Optional[str],
        bounce_policy: BouncePolicy = BouncePolicy.ALWAYS
    ):
        self.event_log = event_log
        self.order_store = order_store
        self.job_queue = job_queue
        self.error_sink = error_sink
        self.secret = secret
        self.bounce_policy = BouncePolicy(bounce_policy)
        self.logger = logger.bind(service="webhook_ingestor")

    def verify(self, credential: Optional[str]) -> None:
        """
        Check the Authorization header of a delivery.

        Args:
            credential: Raw header value, expected "Bearer <secret>"

        Raises:
            AuthenticationError: missing, malformed or wrong credential, or no secret configured
        """
        if not self.secret:
            self.logger.warning("webhook_secret_not_configured")
            raise AuthenticationError("Webhook secret not configured")

        expected = f"Bearer {self.secret}"
        if not credential or not hmac.compare_digest(credential.encode(), expected.encode()):
            self.logger.warning("webhook_unauthorized")
            raise AuthenticationError("Invalid webhook credential")

    def resolve_key(self, event: PaymentWebhookEvent) -> str:
        if event.idempotency_key:
            return event.idempotency_key
        payload = event.model_dump(by_alias=True, exclude={"idempotency_key"})
        return generate_idempotency_key(event.type, event.payment_id, payload)

    async def process(self, event: PaymentWebhookEvent) -> IngestResult:
        """
        Admit and apply one verified event.

        Never raises: failures are logged to the ErrorSink and, where the
        order exists, recorded on it as status=failed.
        """
        key = self.resolve_key(event)
        result = IngestResult(
            status="processed",
            idempotency_key=key,
            event_type=event.type,
            payment_id=event.payment_id
        )
        log = self.logger.bind(event_type=event.type, payment_id=event.payment_id, idempotency_key=key)
        add_breadcrumb("webhook", f"received {event.type}", data={"payment_id": event.payment_id})

        try:
            await self._admit(key, event)
        except DuplicateEventError:
            log.info("webhook_duplicate_ignored")
            result.status = "duplicate"
            return result
        except Exception as e:
            await self.error_sink.log(e, {"component": "WebhookIngestor", "stage": "admit", "idempotency_key": key})
            result.status = "failed"
            result.error = str(e)
            return result

        try:
            result.action = await self._dispatch(event, log)
        except OrderNotFoundError as e:
            log.warning("webhook_order_not_found")
            await self.error_sink.log(e, {"component": "WebhookIngestor", "order_id": event.payment_id})
            result.status = "failed"
            result.error = str(e)
            return result
        except Exception as e:
            await self.error_sink.log(e, {
                "component": "WebhookIngestor",
                "order_id": event.payment_id,
                "event_type": event.type,
            })
            await self._mark_failed(event.payment_id, str(e) or type(e).__name__, log)
            result.status = "failed"
            result.error = str(e)
            return result

        if result.action == "unknown_event_type":
            result.status = "ignored"
        log.info("webhook_processed", action=result.action, status=result.status)
        return result

    async def _admit(self, key: str, event: PaymentWebhookEvent) -> None:
        if await self.event_log.contains(key):
            raise DuplicateEventError(key)
        # The insert is the real gate; contains() only saves a write
        inserted = await self.event_log.insert_if_absent(key, {
            "event_type": event.type,
            "payment_id": event.payment_id,
            "payload": event.model_dump(mode="json", by_alias=True),
        })
        if not inserted:
            raise DuplicateEventError(key)

    async def _dispatch(self, event: PaymentWebhookEvent, log) -> str:
        if event.type == EventType.PAYMENT_STARTED:
            return await self._payment_started(event, log)
        if event.type == EventType.PAYMENT_COMPLETED:
            return await self._payment_completed(event, log)
        if event.type == EventType.PAYMENT_BOUNCED:
            return await self._payment_bounced(event, log)

        log.warning("webhook_unknown_event_type")
        return "unknown_event_type"

    async def _payment_started(self, event: PaymentWebhookEvent, log) -> str:
        order = await self.order_store.get(event.payment_id)

        if order.payment_status == PaymentStatus.PAYMENT_COMPLETED:
            log.info("payment_started_skipped", reason="already_completed")
            return "skipped_already_completed"
        if order.payment_status == PaymentStatus.PAYMENT_BOUNCED:
            log.info("payment_started_skipped", reason="payment_bounced")
            return "skipped_bounced"

        await self.order_store.update(
            event.payment_id,
            payment_status=PaymentStatus.PAYMENT_STARTED,
            payment_chain_id=event.chain_id,
            payment_tx_hash=event.tx_hash
        )
        return "payment_started"

    async def _payment_completed(self, event: PaymentWebhookEvent, log) -> str:
        order = await self.order_store.get(event.payment_id)

        if order.payment_status == PaymentStatus.PAYMENT_BOUNCED:
            log.info("payment_completed_skipped", reason="payment_bounced")
            return "skipped_bounced"

        if order.payment_status == PaymentStatus.PAYMENT_COMPLETED:
            if order.status != OrderStatus.PENDING_GENERATION:
                log.info("payment_completed_skipped", reason="already_completed", status=order.status)
                return "skipped_already_completed"
        else:
            await self.order_store.update(
                event.payment_id,
                payment_status=PaymentStatus.PAYMENT_COMPLETED,
                status=OrderStatus.PENDING_GENERATION,
                payment_completed_tx_hash=event.tx_hash
            )

        enqueued = await self.job_queue.add_job(event.payment_id)
        log.info("generation_job_submitted", created=enqueued.created)
        return "job_enqueued" if enqueued.created else "job_already_tracked"

    async def _payment_bounced(self, event: PaymentWebhookEvent, log) -> str:
        order = await self.order_store.get(event.payment_id)

        if (
            self.bounce_policy == BouncePolicy.UNLESS_COMPLETED
            and order.payment_status == PaymentStatus.PAYMENT_COMPLETED
        ):
            log.info("payment_bounced_skipped", reason="already_completed", policy=self.bounce_policy.value)
            return "skipped_already_completed"

        await self.order_store.update(
            event.payment_id,
            payment_status=PaymentStatus.PAYMENT_BOUNCED,
            status=OrderStatus.FAILED,
            error=BOUNCED_ERROR,
            error_tx_hash=event.tx_hash
        )
        discarded = self.job_queue.discard(event.payment_id)
        log.warning("payment_bounced", previous_payment_status=order.payment_status, job_discarded=discarded)
        return "payment_bounced"

    async def _mark_failed(self, order_id: str, message: str, log) -> None:
        try:
            await self.order_store.update(order_id, status=OrderStatus.FAILED, error=message)
        except Exception as e:
            log.error("webhook_mark_failed_error", error=str(e))
            await self.error_sink.log(e, {"component": "WebhookIngestor", "order_id": order_id, "stage": "mark_failed"})
