"""
Tests for WebhookIngestor

Tests cover:
- Bearer token verification
- Idempotent admission (sequential and concurrent redelivery, derived keys)
- Scenario B: duplicate payment_completed -> exactly one add_job
- Scenario C: bounce of a started payment
- Sticky completion and terminal bounce
- Bounce policy and downstream failure handling
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from app.exceptions import AuthenticationError, InfrastructureError
from app.models.order import OrderStatus, PaymentStatus
from app.models.webhook_schemas import PaymentWebhookEvent
from app.services.job_queue import Enqueued, Job
from app.services.webhook_ingestor import BouncePolicy, WebhookIngestor


@pytest.fixture
def job_queue():
    queue = Mock()
    queue.add_job = AsyncMock(side_effect=lambda order_id: Enqueued(job=Job(order_id=order_id), created=True))
    queue.discard = Mock(return_value=False)
    return queue


@pytest.fixture
def make_ingestor(event_log, order_store, job_queue, error_sink):
    def factory(bounce_policy=BouncePolicy.ALWAYS, secret="whsec-test"):
        return WebhookIngestor(
            event_log=event_log,
            order_store=order_store,
            job_queue=job_queue,
            error_sink=error_sink,
            secret=secret,
            bounce_policy=bounce_policy
        )
    return factory


def event(event_type, payment_id="P1", key="E1", tx_hash="0xabc", **extra):
    body = {"type": event_type, "paymentId": payment_id, "chainId": "8453", "txHash": tx_hash, **extra}
    if key is not None:
        body["idempotencyKey"] = key
    return PaymentWebhookEvent.model_validate(body)


class TestVerify:
    """Bearer token check."""

    def test_valid_token(self, make_ingestor):
        make_ingestor().verify("Bearer whsec-test")

    @pytest.mark.parametrize("credential", [None, "", "whsec-test", "Bearer wrong", "Basic whsec-test"])
    def test_invalid_token(self, make_ingestor, credential):
        with pytest.raises(AuthenticationError):
            make_ingestor().verify(credential)

    def test_rejects_everything_without_secret(self, make_ingestor):
        with pytest.raises(AuthenticationError):
            make_ingestor(secret=None).verify("Bearer None")


@pytest.mark.anyio
class TestIdempotency:
    """Each idempotency key is applied once."""

    async def test_duplicate_is_noop(self, make_ingestor, order_store, make_order, event_log, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))
        ingestor = make_ingestor()

        first = await ingestor.process(event("payment_completed"))
        second = await ingestor.process(event("payment_completed"))

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert len(event_log.rows) == 1
        job_queue.add_job.assert_awaited_once_with("P1")

    async def test_concurrent_duplicates_enqueue_once(self, make_ingestor, order_store, make_order, event_log, job_queue):
        """Scenario B: same key delivered twice concurrently -> one add_job"""
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))
        ingestor = make_ingestor()

        results = await asyncio.gather(
            ingestor.process(event("payment_completed", key="E1")),
            ingestor.process(event("payment_completed", key="E1")),
        )

        assert sorted(r.status for r in results) == ["duplicate", "processed"]
        assert job_queue.add_job.await_count == 1
        assert len(event_log.rows) == 1

    async def test_lost_insert_race_is_duplicate(self, make_ingestor, order_store, make_order, job_queue):
        """contains() missed it but the insert conflicts -> duplicate"""
        order_store.add(make_order("P1"))
        ingestor = make_ingestor()
        ingestor.event_log = Mock()
        ingestor.event_log.contains = AsyncMock(return_value=False)
        ingestor.event_log.insert_if_absent = AsyncMock(return_value=False)

        result = await ingestor.process(event("payment_completed"))

        assert result.status == "duplicate"
        job_queue.add_job.assert_not_awaited()

    async def test_missing_key_is_derived(self, make_ingestor, order_store, make_order, event_log):
        order_store.add(make_order("P1", payment_status=PaymentStatus.NONE, status=None))
        ingestor = make_ingestor()

        first = await ingestor.process(event("payment_started", key=None))
        second = await ingestor.process(event("payment_started", key=None))

        assert first.idempotency_key.startswith("payment_started:P1:")
        assert first.idempotency_key == second.idempotency_key
        assert second.status == "duplicate"

    async def test_event_log_failure_changes_nothing(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED))
        ingestor = make_ingestor()
        ingestor.event_log = Mock()
        ingestor.event_log.contains = AsyncMock(side_effect=InfrastructureError("db down"))

        result = await ingestor.process(event("payment_completed"))

        assert result.status == "failed"
        assert order_store.history == []
        job_queue.add_job.assert_not_awaited()


@pytest.mark.anyio
class TestPaymentStarted:
    async def test_records_started_payment(self, make_ingestor, order_store, make_order):
        order_store.add(make_order("P1", payment_status=PaymentStatus.NONE, status=None))

        await make_ingestor().process(event("payment_started", tx_hash="0xstart"))

        order = await order_store.get("P1")
        assert order.payment_status == PaymentStatus.PAYMENT_STARTED
        assert order.payment_chain_id == "8453"
        assert order.payment_tx_hash == "0xstart"

    async def test_completion_is_sticky(self, make_ingestor, order_store, make_order):
        """payment_started after payment_completed does not downgrade"""
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_COMPLETED, status=OrderStatus.QUEUED))

        result = await make_ingestor().process(event("payment_started", key="late-start"))

        assert result.action == "skipped_already_completed"
        assert (await order_store.get("P1")).payment_status == PaymentStatus.PAYMENT_COMPLETED
        assert order_store.history == []

    async def test_bounced_is_terminal(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_BOUNCED, status=OrderStatus.FAILED))
        ingestor = make_ingestor()

        started = await ingestor.process(event("payment_started", key="E2"))
        completed = await ingestor.process(event("payment_completed", key="E3"))

        assert started.action == "skipped_bounced"
        assert completed.action == "skipped_bounced"
        assert (await order_store.get("P1")).payment_status == PaymentStatus.PAYMENT_BOUNCED
        job_queue.add_job.assert_not_awaited()


@pytest.mark.anyio
class TestPaymentCompleted:
    async def test_marks_pending_and_enqueues(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))

        result = await make_ingestor().process(event("payment_completed", tx_hash="0xdone"))

        order = await order_store.get("P1")
        assert order.payment_status == PaymentStatus.PAYMENT_COMPLETED
        assert order.status == OrderStatus.PENDING_GENERATION
        assert order.payment_completed_tx_hash == "0xdone"
        assert result.action == "job_enqueued"
        job_queue.add_job.assert_awaited_once_with("P1")

    async def test_redelivery_with_new_key_does_not_reset_status(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_COMPLETED, status=OrderStatus.COMPLETED))

        result = await make_ingestor().process(event("payment_completed", key="E9"))

        assert result.action == "skipped_already_completed"
        assert (await order_store.get("P1")).status == OrderStatus.COMPLETED
        job_queue.add_job.assert_not_awaited()

    async def test_pending_order_is_resubmitted(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_COMPLETED, status=OrderStatus.PENDING_GENERATION))

        await make_ingestor().process(event("payment_completed", key="E9"))

        job_queue.add_job.assert_awaited_once_with("P1")
        assert order_store.history == []

    async def test_queue_failure_marks_order_failed(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))
        job_queue.add_job.side_effect = InfrastructureError("Failed to queue order P1")

        result = await make_ingestor().process(event("payment_completed"))

        assert result.status == "failed"
        order = await order_store.get("P1")
        assert order.status == OrderStatus.FAILED
        assert order.error == "Failed to queue order P1"

    async def test_unknown_order(self, make_ingestor, job_queue):
        result = await make_ingestor().process(event("payment_completed", payment_id="ghost"))

        assert result.status == "failed"
        job_queue.add_job.assert_not_awaited()


@pytest.mark.anyio
class TestPaymentBounced:
    async def test_bounce_of_started_payment(self, make_ingestor, order_store, make_order):
        """Scenario C"""
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))

        await make_ingestor().process(event("payment_bounced", tx_hash="0xbounce"))

        order = await order_store.get("P1")
        assert order.payment_status == PaymentStatus.PAYMENT_BOUNCED
        assert order.status == OrderStatus.FAILED
        assert order.error == "Payment bounced"
        assert order.error_tx_hash == "0xbounce"

    async def test_bounce_discards_queued_job(self, make_ingestor, order_store, make_order, job_queue):
        order_store.add(make_order("P1", status=OrderStatus.QUEUED))

        await make_ingestor().process(event("payment_bounced"))

        job_queue.discard.assert_called_once_with("P1")

    async def test_always_policy_overrides_completed(self, make_ingestor, order_store, make_order):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_COMPLETED, status=OrderStatus.PROCESSING))

        await make_ingestor(BouncePolicy.ALWAYS).process(event("payment_bounced"))

        assert (await order_store.get("P1")).payment_status == PaymentStatus.PAYMENT_BOUNCED

    async def test_unless_completed_policy_keeps_completed(self, make_ingestor, order_store, make_order):
        order_store.add(make_order("P1", payment_status=PaymentStatus.PAYMENT_COMPLETED, status=OrderStatus.PROCESSING))

        result = await make_ingestor(BouncePolicy.UNLESS_COMPLETED).process(event("payment_bounced"))

        assert result.action == "skipped_already_completed"
        order = await order_store.get("P1")
        assert order.payment_status == PaymentStatus.PAYMENT_COMPLETED
        assert order.status == OrderStatus.PROCESSING


@pytest.mark.anyio
async def test_unknown_event_type_is_ignored(make_ingestor, order_store, make_order, event_log):
    order_store.add(make_order("P1"))

    result = await make_ingestor().process(event("payment_refunded"))

    assert result.status == "ignored"
    assert order_store.history == []
    assert len(event_log.rows) == 1
