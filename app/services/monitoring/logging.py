"""
Structured JSON Logging with Correlation ID
Routes structlog and standard library logging to one JSON stream on stdout
"""

import logging
import sys
import os

import structlog
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = "video-order-engine"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with automatic correlation ID injection.

    The correlation ID is read from async context (set by CorrelationIdMiddleware
    for HTTP requests, inherited by background tasks spawned from them).
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')


def _add_correlation_id(logger, method_name, event_dict):
    """structlog processor mirroring CorrelationJsonFormatter"""
    event_dict.setdefault('correlation_id', correlation_id.get() or 'none')
    return event_dict


def setup_logging(level: int = logging.INFO) -> logging.Handler:
    """
    Configure structured JSON logging to stdout.

    Standard library loggers go through CorrelationJsonFormatter; structlog
    loggers render JSON directly with the same correlation_id field.

    Args:
        level: Root log level

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_correlation_id,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    )

    return handler
