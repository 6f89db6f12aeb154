"""
Pydantic schemas for payment webhooks and the generation API
"""

from pydantic import BaseModel, Field
from typing import Optional


class PaymentWebhookEvent(BaseModel):
    """
    Payment provider webhook payload.

    The idempotency key travels in a header and is attached by the router.
    """
    type: str = Field(..., description="payment_started | payment_completed | payment_bounced")
    payment_id: str = Field(..., alias="paymentId", description="Payment id (= order id)")
    chain_id: Optional[str] = Field(None, alias="chainId", description="Chain the payment was made on")
    tx_hash: Optional[str] = Field(None, alias="txHash", description="Transaction hash")
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey", description="Unique delivery id")

    class Config:
        populate_by_name = True
        # Allow extra fields that we don't use
        extra = "allow"


class WebhookAck(BaseModel):
    """Response returned to the payment provider"""
    received: bool = True


class GenerateVideoRequest(BaseModel):
    """Inbound generation request"""
    order_id: str = Field("", alias="orderId")

    class Config:
        populate_by_name = True


class GenerateVideoResponse(BaseModel):
    """Result of a generation request"""
    success: bool
    message: str
    status: Optional[str] = None
    queue_position: Optional[int] = Field(None, alias="queuePosition")
    estimated_wait_time: Optional[float] = Field(None, alias="estimatedWaitTime")

    class Config:
        populate_by_name = True


class OrderStatusResponse(BaseModel):
    """Result of a status query"""
    status: Optional[str] = None
    video_url: Optional[str] = Field(None, alias="videoUrl")
    error: Optional[str] = None
    is_queued: bool = Field(False, alias="isQueued")
    is_processing: bool = Field(False, alias="isProcessing")
    queue_position: Optional[int] = Field(None, alias="queuePosition")

    class Config:
        populate_by_name = True
