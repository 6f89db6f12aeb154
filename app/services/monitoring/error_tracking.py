"""
Error Tracking
Sentry initialisation and the ErrorSink used by every component boundary
"""

import logging
import traceback
from typing import Optional

import sentry_sdk
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.error_log import ErrorLog

logger = logging.getLogger(__name__)
slog = structlog.get_logger(__name__)


def init_sentry() -> None:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).
    """
    from app.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    try:
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            traces_sample_rate=0.1,  # 10% of requests traced
            integrations=[
                FastApiIntegration(),
            ],
        )

        logger.info(
            "Sentry initialized",
            extra={"environment": settings.sentry_environment or settings.environment}
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def set_order_context(order_id: str, component: str) -> None:
    """
    Tag subsequent Sentry events with the order being processed.

    Args:
        order_id: Order the current task works on
        component: Component name (e.g., "GenerationOrchestrator")
    """
    sentry_sdk.set_context("order", {"order_id": order_id, "component": component})
    sentry_sdk.set_tag("order_id", order_id)
    sentry_sdk.set_tag("component", component)


def add_breadcrumb(category: str, message: str, level: str = "info", data: Optional[dict] = None) -> None:
    """
    Add breadcrumb to Sentry for the processing trail.

    Args:
        category: Breadcrumb category (e.g., "generation", "webhook")
        message: Human-readable message
        level: Severity level ("debug", "info", "warning", "error")
        data: Additional structured data
    """
    sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


class ErrorSink:
    """
    Fire-and-forget audit logging for errors caught at component boundaries.

    Every step (structured log, Sentry capture, error_logs row) swallows its
    own failure: logging an error must never abort the calling operation.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        """
        Args:
            session_factory: Optional async sessionmaker; when None errors are not persisted
        """
        self.session_factory = session_factory
        self.logger = slog.bind(service="error_sink")

    async def log(self, error: BaseException, context: Optional[dict] = None) -> None:
        """
        Record an error with its context.

        Args:
            error: The caught exception
            context: Structured context (order_id, component, ...)
        """
        context = dict(context or {})
        error_type = type(error).__name__

        try:
            self.logger.error(
                "error_logged",
                error_type=error_type,
                error=str(error),
                stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
                **{f"ctx_{key}": value for key, value in context.items()}
            )
        except Exception:
            logger.exception("ErrorSink structured log failed")

        try:
            sentry_sdk.capture_exception(error, contexts={"orchestration": context})
        except Exception:
            logger.exception("ErrorSink Sentry capture failed")

        if self.session_factory is None:
            return

        session = self.session_factory()
        try:
            session.add(ErrorLog(
                error_type=error_type,
                message=str(error) or error_type,
                context={key: str(value) for key, value in context.items()}
            ))
            await session.commit()
        except Exception as e:
            logger.error(f"Failed to persist error log: {e}")
            try:
                await session.rollback()
            except Exception:
                logger.exception("ErrorSink rollback failed")
        finally:
            await session.close()
