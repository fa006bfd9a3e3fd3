"""
Podlink logging - structured, session-aware logging.

This module provides:
- Structured logging with structlog
- Session context propagation via contextvars
- Step timing
- Settings-based configuration

Usage:
    from podlink.logging import get_logger, configure_logging, bind_context

    configure_logging()
    log = get_logger(__name__)

    bind_context(session_id="a1b2c3", namespace="default")
    log.info("pod.submitted", pod="runner-x")
"""

from podlink.logging.config import configure_logging, is_configured
from podlink.logging.context import (
    LogContext,
    bind_context,
    clear_context,
    get_context,
    get_logger,
    new_session_id,
    push_context,
    set_context,
)
from podlink.logging.timing import TimingResult, log_step

__all__ = [
    "configure_logging",
    "is_configured",
    "get_logger",
    "set_context",
    "clear_context",
    "get_context",
    "bind_context",
    "push_context",
    "new_session_id",
    "LogContext",
    "TimingResult",
    "log_step",
]
