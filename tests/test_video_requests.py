"""
Tests for VideoRequestService

Tests cover:
- Eligibility rules and error codes for generation requests
- Explicit retry of failed orders
- Status query fields
"""

import asyncio

import pytest

from app.exceptions import OrderNotFoundError, ValidationError
from app.models.order import OrderStatus, PaymentStatus
from app.services.generation.orchestrator import GenerationOutcome, GenerationState
from app.services.job_queue import JobQueue
from app.services.video_requests import VideoRequestService


pytestmark = pytest.mark.anyio


class BlockingRunner:
    def __init__(self):
        self.gate = asyncio.Event()

    async def run(self, order_id):
        await self.gate.wait()
        return GenerationOutcome(order_id=order_id, state=GenerationState.SUCCEEDED)


@pytest.fixture
def runner():
    return BlockingRunner()


@pytest.fixture
def job_queue(order_store, error_sink, runner):
    queue = JobQueue(runner=runner, order_store=order_store, error_sink=error_sink, average_processing_seconds=300)
    queue.start()
    return queue


@pytest.fixture
def service(order_store, job_queue):
    return VideoRequestService(order_store, job_queue)


class TestRequestGeneration:
    async def test_queues_pending_order(self, service, order_store, make_order):
        order_store.add(make_order("O1"))

        response = await service.request_generation("O1")

        assert response.success is True
        assert response.message == "Video generation queued"
        assert response.queue_position == 0
        assert response.status == "processing"

    async def test_second_order_waits(self, service, order_store, make_order):
        order_store.add(make_order("O1"))
        order_store.add(make_order("O2"))

        await service.request_generation("O1")
        await asyncio.sleep(0)
        response = await service.request_generation("O2")

        assert response.status == "queued"
        assert response.queue_position == 1
        assert response.estimated_wait_time == 300

    async def test_already_in_progress(self, service, order_store, make_order):
        order_store.add(make_order("O1"))
        await service.request_generation("O1")
        writes = len(order_store.history)

        response = await service.request_generation("O1")

        assert response.success is True
        assert response.message == "Video generation already in progress"
        assert len(order_store.history) == writes

    @pytest.mark.parametrize("order_id", ["", "   ", None])
    async def test_order_id_required(self, service, order_id):
        with pytest.raises(ValidationError) as exc_info:
            await service.request_generation(order_id)
        assert exc_info.value.code == "ORDER_ID_REQUIRED"

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.request_generation("missing")

    async def test_unpaid_order_not_eligible(self, service, order_store, make_order):
        order_store.add(make_order("O1", payment_status=PaymentStatus.PAYMENT_STARTED, status=None))

        with pytest.raises(ValidationError) as exc_info:
            await service.request_generation("O1")
        assert exc_info.value.code == "ORDER_NOT_ELIGIBLE"

    async def test_completed_order(self, service, order_store, make_order):
        order_store.add(make_order("O1", status=OrderStatus.COMPLETED, video_url="https://v.example.com/1.mp4"))

        with pytest.raises(ValidationError) as exc_info:
            await service.request_generation("O1")
        assert exc_info.value.code == "ORDER_ALREADY_COMPLETED"

    async def test_failed_order_can_be_retried(self, service, order_store, make_order, job_queue):
        order_store.add(make_order("O1", status=OrderStatus.FAILED, error="Video generation timed out after 40 minutes"))

        response = await service.request_generation("O1")

        assert response.success is True
        assert job_queue.contains("O1")

    async def test_stranded_processing_order_is_eligible(self, service, order_store, make_order, job_queue):
        """processing in the store but unknown to the queue (lost on restart)"""
        order_store.add(make_order("O1", status=OrderStatus.PROCESSING))

        await service.request_generation("O1")

        assert job_queue.contains("O1")


class TestGetStatus:
    async def test_completed_order(self, service, order_store, make_order):
        order_store.add(make_order("O1", status=OrderStatus.COMPLETED, video_url="https://v.example.com/1.mp4"))

        status = await service.get_status("O1")

        assert status.status == OrderStatus.COMPLETED
        assert status.video_url == "https://v.example.com/1.mp4"
        assert status.is_queued is False
        assert status.is_processing is False
        assert status.queue_position is None

    async def test_queued_and_processing_flags(self, service, order_store, make_order):
        order_store.add(make_order("O1"))
        order_store.add(make_order("O2"))
        await service.request_generation("O1")
        await service.request_generation("O2")
        await asyncio.sleep(0)

        active = await service.get_status("O1")
        waiting = await service.get_status("O2")

        assert active.is_processing is True
        assert waiting.is_queued is True
        assert waiting.queue_position == 1

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFoundError):
            await service.get_status("missing")
