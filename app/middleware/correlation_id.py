"""
Correlation ID Middleware
Request tracing ids for HTTP requests and for work started outside a request
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

__all__ = ["CorrelationIdMiddleware", "get_correlation_id", "start_correlation"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Tasks created with asyncio.create_task copy the context, so a generation
    job inherits the id of the request that queued it.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'


def start_correlation(prefix: str) -> str:
    """
    Set a fresh correlation ID for work that has no inbound request
    (scheduled jobs, startup recovery).

    Args:
        prefix: Short label for the origin, e.g. "recovery"

    Returns:
        str: The new correlation ID
    """
    value = f"{prefix}-{uuid.uuid4().hex[:12]}"
    correlation_id.set(value)
    return value
