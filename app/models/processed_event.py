"""
ProcessedEvent Model
Append-only record of admitted webhook deliveries, keyed by idempotency key
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from sqlalchemy.sql import func
from app.database import Base


class ProcessedEvent(Base):
    """
    Dedup record for inbound payment webhooks.

    Inserting a row is the only admission gate for an event. Rows are
    immutable and kept indefinitely as an audit trail.
    """
    __tablename__ = "processed_webhooks"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Idempotency Key
    idempotency_key = Column(String(255), unique=True, nullable=False, index=True)

    # Event Metadata
    event_type = Column(String(50), nullable=False)
    payment_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)

    # Timestamps
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_processed_webhooks_payment_id', 'payment_id'),
    )

    def __repr__(self):
        return f"<ProcessedEvent(id={self.id}, key='{self.idempotency_key}', type='{self.event_type}')>"
