"""
Video Router
Generation requests and order status queries
"""

import structlog
from fastapi import APIRouter, Depends

from app.container import ServiceContainer
from app.models.webhook_schemas import GenerateVideoRequest, GenerateVideoResponse, OrderStatusResponse
from app.routers.dependencies import get_container, require_api_key

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["videos"])


@router.post(
    "/generate-video",
    response_model=GenerateVideoResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_api_key)]
)
async def generate_video(
    request: GenerateVideoRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Queue video generation for a paid order

    Raises:
        400: order id missing or order not eligible
        404: order not found
        503: order could not be queued
    """
    response = await container.video_requests.request_generation(request.order_id)
    logger.info("generation_requested", order_id=request.order_id, message=response.message)
    return response


@router.get(
    "/orders/{order_id}/status",
    response_model=OrderStatusResponse,
    response_model_exclude_none=True
)
async def get_order_status(
    order_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """
    Customer-facing order status

    Raises:
        404: order not found
    """
    return await container.video_requests.get_status(order_id)
