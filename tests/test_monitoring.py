"""Tests for ErrorSink and the notification circuit breaker."""

from unittest.mock import AsyncMock, MagicMock, patch

import pybreaker
import pytest

from app.services.monitoring.circuit_breakers import get_breaker, get_notifications_breaker
from app.services.monitoring.error_tracking import ErrorSink


@pytest.mark.anyio
class TestErrorSink:
    async def test_log_without_database(self):
        """Log and Sentry capture only, nothing raised"""
        with patch("app.services.monitoring.error_tracking.sentry_sdk") as sentry:
            await ErrorSink().log(RuntimeError("boom"), {"order_id": "O1", "component": "JobQueue"})

        sentry.capture_exception.assert_called_once()
        assert sentry.capture_exception.call_args.kwargs["contexts"] == {
            "orchestration": {"order_id": "O1", "component": "JobQueue"}
        }

    async def test_persists_error_row(self):
        session = MagicMock()
        session.commit = AsyncMock()
        session.close = AsyncMock()
        sink = ErrorSink(session_factory=MagicMock(return_value=session))

        await sink.log(ValueError("bad value"), {"order_id": "O1"})

        row = session.add.call_args.args[0]
        assert row.error_type == "ValueError"
        assert row.message == "bad value"
        assert row.context == {"order_id": "O1"}
        session.commit.assert_awaited_once()

    async def test_swallows_persistence_failure(self):
        session = MagicMock()
        session.commit = AsyncMock(side_effect=RuntimeError("db down"))
        session.rollback = AsyncMock()
        session.close = AsyncMock()
        sink = ErrorSink(session_factory=MagicMock(return_value=session))

        await sink.log(ValueError("bad value"))

        session.rollback.assert_awaited_once()
        session.close.assert_awaited_once()


class TestCircuitBreakers:
    def test_notifications_breaker_is_shared(self):
        assert get_notifications_breaker() is get_breaker("notifications")
        assert get_notifications_breaker().name == "notification_transport"

    def test_unknown_breaker(self):
        with pytest.raises(ValueError):
            get_breaker("render_agent")

    def test_opens_after_fail_max(self):
        breaker = get_notifications_breaker()
        breaker.close()

        def failing():
            raise ConnectionError("resend unreachable")

        with patch("app.services.monitoring.circuit_breakers.sentry_sdk"):
            for _ in range(breaker.fail_max - 1):
                with pytest.raises(ConnectionError):
                    breaker.call(failing)
            with pytest.raises(pybreaker.CircuitBreakerError):
                breaker.call(failing)

        assert breaker.current_state == pybreaker.STATE_OPEN
        breaker.close()
