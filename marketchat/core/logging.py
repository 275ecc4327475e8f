"""
Logging configuration for the application.
"""
import logging
import sys

import structlog

from marketchat.core.config import settings


def setup_logging():
    """
    Configure structured logging for the application.
    """
    log_level = logging.DEBUG if settings.api_debug else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            # Console output while developing, JSON lines in deployments
            structlog.dev.ConsoleRenderer()
            if settings.api_debug
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    """
    Get a structured logger.

    Args:
        name: Optional logger name.

    Returns:
        Structured logger instance.
    """
    return structlog.get_logger(name)
