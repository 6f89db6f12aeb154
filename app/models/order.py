"""
Order Model
One purchase, its generation request and its two independent status fields
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Set

from pydantic import BaseModel, ConfigDict
from sqlalchemy import Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base


class PaymentStatus(str, Enum):
    NONE = "none"
    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_BOUNCED = "payment_bounced"


class OrderStatus(str, Enum):
    PENDING_GENERATION = "pending_generation"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# State machine: pending_generation -> queued -> processing -> completed | failed
# failed -> queued and processing -> queued (stranded by a restart) only
# through an explicit re-submission. A payment bounce overrides the table.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING_GENERATION: {OrderStatus.QUEUED, OrderStatus.FAILED},
    OrderStatus.QUEUED: {OrderStatus.PROCESSING, OrderStatus.FAILED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.QUEUED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.FAILED: {OrderStatus.QUEUED},
}


def can_transition(current: Optional[str], new: str) -> bool:
    """
    Check whether a generation status transition is allowed.

    Re-entering the same status is allowed (idempotent writes on redelivery).
    An order with no status yet may enter any status.
    """
    if current is None or current == new:
        return True
    return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def statuses_entering(new: str) -> Set[Optional[str]]:
    """Current statuses (None = unset) from which `new` may be entered, as plain values"""
    return {None} | {status.value for status in OrderStatus if can_transition(status.value, new)}


class Order(BaseModel):
    """Domain view of an order as returned by the OrderStore"""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True, validate_default=True)

    order_id: str
    payment_status: PaymentStatus = PaymentStatus.NONE
    status: Optional[OrderStatus] = None
    email: Optional[str] = None
    prompt: str = ""
    resolution: Optional[str] = None
    duration: Optional[str] = None
    aspect_ratio: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None

    # Payment audit trail
    payment_chain_id: Optional[str] = None
    payment_tx_hash: Optional[str] = None
    payment_completed_tx_hash: Optional[str] = None
    error_tx_hash: Optional[str] = None

    # Timing
    processing_time_seconds: Optional[float] = None
    generation_time_seconds: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class OrderRow(Base):
    """
    Orders table.

    Rows are created by the upstream order-placement flow; this service only
    updates payment and generation fields.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(255), nullable=False, unique=True, index=True)  # Payment provider id

    # Status fields
    payment_status = Column(String(50), nullable=False, default=PaymentStatus.NONE.value)
    status = Column(String(50), nullable=True, index=True)

    # Generation request
    email = Column(String(255), nullable=True)
    prompt = Column(Text, nullable=False, default="")
    resolution = Column(String(20), nullable=True)
    duration = Column(String(20), nullable=True)
    aspect_ratio = Column(String(20), nullable=True)

    # Generation result
    video_url = Column(Text, nullable=True)
    error = Column(Text, nullable=True)

    # Payment audit trail
    payment_chain_id = Column(String(100), nullable=True)
    payment_tx_hash = Column(String(255), nullable=True)
    payment_completed_tx_hash = Column(String(255), nullable=True)
    error_tx_hash = Column(String(255), nullable=True)

    # Timing
    processing_time_seconds = Column(Float, nullable=True)
    generation_time_seconds = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OrderRow(order_id='{self.order_id}', payment='{self.payment_status}', status='{self.status}')>"
