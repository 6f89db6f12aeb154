"""
Middleware Module
ASGI middleware for request processing
"""

from app.middleware.correlation_id import CorrelationIdMiddleware, get_correlation_id, start_correlation

__all__ = ["CorrelationIdMiddleware", "get_correlation_id", "start_correlation"]
