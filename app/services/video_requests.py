"""
Video Request Service
Inbound generation requests and customer-facing status queries
"""

from typing import Optional

import structlog

from app.exceptions import ValidationError
from app.models.order import OrderStatus, PaymentStatus, can_transition
from app.models.webhook_schemas import GenerateVideoResponse, OrderStatusResponse
from app.services.job_queue import JobQueue
from app.services.order_store import OrderStore

logger = structlog.get_logger(__name__)


class VideoRequestService:
    def __init__(self, order_store: OrderStore, job_queue: JobQueue):
        self.order_store = order_store
        self.job_queue = job_queue
        self.logger = logger.bind(service="video_requests")

    async def request_generation(self, order_id: Optional[str]) -> GenerateVideoResponse:
        """
        Queue generation for a paid order.

        Raises:
            ValidationError: ORDER_ID_REQUIRED, ORDER_ALREADY_COMPLETED or ORDER_NOT_ELIGIBLE
            OrderNotFoundError: unknown order
            InfrastructureError: the order could not be queued
        """
        order_id = (order_id or "").strip()
        if not order_id:
            raise ValidationError("Order ID is required", code="ORDER_ID_REQUIRED")

        if self.job_queue.contains(order_id):
            return self._in_progress(order_id, "Video generation already in progress")

        order = await self.order_store.get(order_id)

        if order.status == OrderStatus.COMPLETED:
            raise ValidationError("Video already generated for this order", code="ORDER_ALREADY_COMPLETED")

        # queued / processing cover orders stranded by a restart, failed is the explicit retry path
        eligible = order.status is not None and can_transition(order.status, OrderStatus.QUEUED)
        if order.payment_status != PaymentStatus.PAYMENT_COMPLETED or not eligible:
            self.logger.warning(
                "generation_request_rejected",
                order_id=order_id,
                payment_status=order.payment_status,
                status=order.status
            )
            raise ValidationError(
                f"Order is not eligible for generation (payment: {order.payment_status}, status: {order.status})",
                code="ORDER_NOT_ELIGIBLE"
            )

        if order.status == OrderStatus.FAILED:
            self.logger.info("explicit_retry_requested", order_id=order_id, previous_error=order.error)

        enqueued = await self.job_queue.add_job(order_id)
        message = "Video generation queued" if enqueued.created else "Video generation already in progress"
        return self._in_progress(order_id, message)

    def _in_progress(self, order_id: str, message: str) -> GenerateVideoResponse:
        position = self.job_queue.position(order_id)
        return GenerateVideoResponse(
            success=True,
            message=message,
            status="processing" if position == 0 else OrderStatus.QUEUED.value,
            queue_position=position,
            estimated_wait_time=self.job_queue.estimated_wait_seconds(order_id)
        )

    async def get_status(self, order_id: str) -> OrderStatusResponse:
        """
        Raises:
            OrderNotFoundError: unknown order
        """
        order = await self.order_store.get(order_id)
        position = self.job_queue.position(order_id)
        return OrderStatusResponse(
            status=order.status,
            video_url=order.video_url,
            error=order.error,
            is_queued=position is not None and position > 0,
            is_processing=position == 0,
            queue_position=position if position else None
        )
