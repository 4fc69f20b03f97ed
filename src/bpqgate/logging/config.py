"""Centralized structlog configuration for the BPQ gateway.

Logs go to stderr with ISO timestamps, rendered either for the console or as
JSON lines depending on ``BPQGATE_LOG_FORMAT``.
"""

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from bpqgate.config import Settings


def configure_logging(settings: "Settings | None" = None) -> None:
    """
    Configure structlog for the gateway.

    This should be called once at application startup.

    Args:
        settings: Settings instance (cached settings are used if None)
    """
    if settings is None:
        from bpqgate.config import get_settings

        settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """
    Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__ of calling module)
    """
    return structlog.get_logger(name)
