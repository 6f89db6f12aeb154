"""
Error Taxonomy
Exceptions raised across webhook ingestion, the job queue and the generation protocol
"""

from typing import Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""

    code = "ORCHESTRATION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class AuthenticationError(OrchestrationError):
    """Webhook credential or API key did not match the configured secret."""

    code = "UNAUTHORIZED"


class DuplicateEventError(OrchestrationError):
    """Idempotency key was already admitted; the event is a no-op."""

    code = "DUPLICATE_EVENT"

    def __init__(self, idempotency_key: str):
        super().__init__(f"Event already processed: {idempotency_key}")
        self.idempotency_key = idempotency_key


class ValidationError(OrchestrationError):
    """Missing or invalid request fields, or order not eligible for the request."""

    code = "VALIDATION_ERROR"


class OrderNotFoundError(OrchestrationError):
    """Unknown order id."""

    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InfrastructureError(OrchestrationError):
    """Store, queue or transport connectivity failure."""

    code = "INFRASTRUCTURE_ERROR"


class StaleOrderError(OrchestrationError):
    """A guarded update found the order in a status other than the expected ones."""

    code = "ORDER_STATE_CHANGED"

    def __init__(self, order_id: str, status: Optional[str]):
        super().__init__(f"Order {order_id} is {status or 'unset'}, update skipped")
        self.order_id = order_id
        self.status = status


class GenerationError(OrchestrationError):
    """
    Generation protocol failure.

    The message is what ends up in Order.error, so it must be readable
    by the customer-facing status query.
    """

    code = "GENERATION_FAILED"


class AuthFailure(GenerationError):
    code = "GENERATION_AUTH_FAILED"


class ConfigFailure(GenerationError):
    code = "GENERATION_CONFIG_FAILED"


class SubmitFailure(GenerationError):
    code = "GENERATION_SUBMIT_FAILED"


class PollTimeout(GenerationError):
    code = "GENERATION_TIMEOUT"

    def __init__(self, timeout_seconds: float):
        if timeout_seconds < 60:
            elapsed = f"{timeout_seconds:g} seconds"
        else:
            elapsed = f"{timeout_seconds / 60:g} minutes"
        super().__init__(f"Video generation timed out after {elapsed}")
        self.timeout_seconds = timeout_seconds
