"""
Audit Log Models
Persisted error reports and permanently failed notifications
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from sqlalchemy.sql import func
from app.database import Base


class ErrorLog(Base):
    """Error reported to the ErrorSink"""
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    error_type = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    context = Column(JSON, nullable=True)
    # e.g. {"order_id": "...", "component": "JobQueue"}

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<ErrorLog(id={self.id}, type='{self.error_type}')>"


class NotificationFailure(Base):
    """Notification that exhausted all retries"""
    __tablename__ = "email_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    added_at = Column(DateTime(timezone=True), nullable=True)  # when first enqueued
    failed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<NotificationFailure(id={self.id}, recipient='{self.recipient}', retries={self.retry_count})>"
