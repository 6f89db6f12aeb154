"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from app.services.monitoring.logging import setup_logging, CorrelationJsonFormatter
from app.services.monitoring.circuit_breakers import (
    get_breaker,
    get_notifications_breaker,
    CircuitBreakerError,
    CircuitBreakerAlertListener,
)
from app.services.monitoring.error_tracking import ErrorSink, init_sentry

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "get_breaker",
    "get_notifications_breaker",
    "CircuitBreakerError",
    "CircuitBreakerAlertListener",
    "ErrorSink",
    "init_sentry",
]
