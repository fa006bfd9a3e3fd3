"""
Logging configuration.

Provides a single entry point for configuring structured logging.

Defaults come from :class:`~podlink.config.settings.PodlinkSettings`:
- PODLINK_LOG_LEVEL: DEBUG | INFO | WARNING | ERROR (default: INFO)
- PODLINK_LOG_FORMAT: json | console (default: console)

Logs always go to stderr so that a session's stdout stays reserved for
the workload's output.

Usage:
    # Configure at application startup
    from podlink.logging import configure_logging
    configure_logging()

    # Or with explicit settings
    configure_logging(level="DEBUG", format="json")
"""

import logging
import sys
from typing import Literal

import structlog
from structlog.types import Processor

from podlink.config.settings import get_settings
from podlink.logging.context import add_context_processor

# Track if logging has been configured
_configured = False


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
    force: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Should be called once at application startup (CLI entry).
    Subsequent calls are no-ops unless force=True.

    Args:
        level: Log level (overrides PODLINK_LOG_LEVEL)
        format: Output format (overrides PODLINK_LOG_FORMAT)
        force: Reconfigure even if already configured
    """
    global _configured

    if _configured and not force:
        return

    settings = get_settings()
    log_level = (level or settings.log_level).upper()
    log_format = (format or settings.log_format).lower()

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        # UTC ISO-8601
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        # Session context from contextvars
        add_context_processor,
        structlog.processors.format_exc_info,
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
        force=True,  # Override any existing config
    )

    logging.getLogger("podlink").setLevel(getattr(logging, log_level))
    # The client library logs every request body at DEBUG
    logging.getLogger("kubernetes").setLevel(max(logging.INFO, getattr(logging, log_level)))

    _configured = True


def is_configured() -> bool:
    """Check if logging has been configured."""
    return _configured
