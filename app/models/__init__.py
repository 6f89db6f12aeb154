"""
Database Models
"""

from app.models.order import Order, OrderRow, OrderStatus, PaymentStatus
from app.models.processed_event import ProcessedEvent
from app.models.error_log import ErrorLog, NotificationFailure

__all__ = [
    "Order",
    "OrderRow",
    "OrderStatus",
    "PaymentStatus",
    "ProcessedEvent",
    "ErrorLog",
    "NotificationFailure",
]
