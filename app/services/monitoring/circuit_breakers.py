"""
Circuit Breakers for Outbound Dependencies

Opens after consecutive failures so that a dead email provider does not
turn every queued notification into a slow timeout, and retries after the
reset timeout.
"""

from typing import Dict, Optional

import pybreaker
import sentry_sdk
import structlog
from pybreaker import CircuitBreakerError

from app.config import settings

logger = structlog.get_logger(__name__)

# public name -> breaker name
KNOWN_BREAKERS = {
    "notifications": "notification_transport",
}


class CircuitBreakerAlertListener(pybreaker.CircuitBreakerListener):
    """
    Logs every state change and raises a Sentry message when a circuit opens.
    """

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        logger.warning(
            "circuit_breaker_state_change",
            circuit_breaker=cb.name,
            old_state=old_state.name,
            new_state=new_state.name,
            fail_count=cb.fail_counter
        )

        if new_state.name == pybreaker.STATE_OPEN:
            sentry_sdk.capture_message(
                f"Circuit breaker opened: {cb.name} after {cb.fail_counter} failures",
                level="error"
            )


_listener: Optional[CircuitBreakerAlertListener] = None
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get (and on first use create) the breaker for an outbound service.

    Args:
        service_name: One of KNOWN_BREAKERS

    Raises:
        ValueError: If service_name is not recognized
    """
    global _listener

    if service_name not in KNOWN_BREAKERS:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {sorted(KNOWN_BREAKERS)}")

    if _listener is None:
        _listener = CircuitBreakerAlertListener()

    breaker = _breakers.get(service_name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            name=KNOWN_BREAKERS[service_name],
            fail_max=settings.circuit_breaker_fail_max,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            listeners=[_listener]
        )
        _breakers[service_name] = breaker
        logger.info("circuit_breaker_initialized", service=service_name, fail_max=breaker.fail_max)
    return breaker


def get_notifications_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("notifications")


__all__ = [
    "CircuitBreakerAlertListener",
    "get_breaker",
    "get_notifications_breaker",
    "CircuitBreakerError",
]
