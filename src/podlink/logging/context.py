"""
Logging context management using contextvars.

Session-aware context that automatically attaches to all log entries.
Context is propagated through the call stack (and into tasks spawned from
it) without explicit parameter passing.

contextvars are asyncio-safe: the watch follower and the I/O pump each run
in a task that inherits a copy of the session's context.
"""

import uuid
from contextvars import ContextVar, Token
from dataclasses import asdict, dataclass
from typing import Any

import structlog


def new_session_id() -> str:
    """Generate a short session ID (12 hex chars)."""
    return uuid.uuid4().hex[:12]


@dataclass
class LogContext:
    """
    Session context attached to all log entries.

    Identity:
        session_id: Unique per SessionCoordinator
        namespace: Target namespace
        pod: Pod name (set once the server accepted the Pod)

    State:
        phase: Last locally tracked phase
        container: Container the transport is attached to

    Tracing:
        step: Current timed step (see ``log_step``)
        span_id: Span of the current timed step
    """

    session_id: str | None = None
    namespace: str | None = None
    pod: str | None = None
    phase: str | None = None
    container: str | None = None
    step: str | None = None
    span_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "LogContext":
        """Create new context with merged values."""
        current = asdict(self)
        current.update({k: v for k, v in kwargs.items() if v is not None})
        return LogContext(**current)


_log_context: ContextVar[LogContext] = ContextVar("podlink_log_context")  # noqa: B039


def get_context() -> LogContext:
    """Get the current log context."""
    return _log_context.get(LogContext())


def set_context(**kwargs) -> LogContext:
    """
    Set the current log context.

    This replaces the current context. Use bind_context() to add to existing.
    """
    ctx = LogContext(**kwargs)
    _log_context.set(ctx)
    return ctx


def bind_context(**kwargs) -> LogContext:
    """Merge values into the current context."""
    updated = get_context().merge(**kwargs)
    _log_context.set(updated)
    return updated


def clear_context() -> None:
    """Clear the current context (reset to empty)."""
    _log_context.set(LogContext())


class _ContextToken:
    """Token for restoring context after a scoped operation."""

    def __init__(self, token: Token[LogContext]):
        self._token = token

    def restore(self) -> None:
        """Restore the previous context."""
        _log_context.reset(self._token)


def push_context(**kwargs) -> _ContextToken:
    """
    Push new context values, returning a token to restore later.

    Usage:
        token = push_context(pod="runner-x")
        try:
            await do_work()
        finally:
            token.restore()
    """
    updated = get_context().merge(**kwargs)
    return _ContextToken(_log_context.set(updated))


def add_context_processor(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """
    Structlog processor that adds session context to every log entry.

    Explicit event keys win over context values.
    """
    for key, value in get_context().to_dict().items():
        if key not in event_dict:
            event_dict[key] = value
    return event_dict


def get_logger(name: str | None = None) -> Any:
    """
    Get a structured logger.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)
