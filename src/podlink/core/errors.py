"""
Structured error types for podlink sessions.

Every failure a session can surface is a ``SessionError`` subclass that
carries a category, a retryable flag, a ``kind`` where the failure has
sub-cases, structured diagnostic context and the underlying cause.

Manifesto:
    - **Typed hierarchy:** one error type per session stage
    - **Explicit retry semantics:** each error knows whether a retry may help
    - **Rich context:** phase, pod, namespace and container statuses travel
      with the error instead of being formatted into the message
    - **Error chaining:** the transport exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        SessionError                           │
        │   (category, retryable, kind, context, cause)                 │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigValidationError     ClusterConnectionError             │
        │  (CONFIG)                  (AUTH | TLS | UNREACHABLE)          │
        │                                                               │
        │  SubmitError               WatchError        PodTimedOut      │
        │  (CONFLICT | INVALID |     (UNREACHABLE)     PodFailed        │
        │   UNREACHABLE)                               SessionCancelled │
        │                                                               │
        │  AttachError               TransportBrokenError               │
        │  (NOT_RUNNING |            ChannelClosedError                 │
        │   UNREACHABLE | REJECTED)  DeleteError (non-fatal)            │
        └──────────────────────────────────────────────────────────────┘

Examples:
    >>> err = SubmitError("pod name taken", kind=SubmitErrorKind.CONFLICT)
    >>> err.retryable
    False
    >>> err.with_context(pod="runner-1", namespace="default").to_dict()["context"]
    {'pod': 'runner-1', 'namespace': 'default'}

Tags:
    error-handling, exception-hierarchy, retry-logic, podlink

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    CONFIG = "CONFIG"             # Invalid configuration document
    AUTH = "AUTH"                 # Credentials rejected by the API server
    TLS = "TLS"                   # Certificate verification / handshake
    NETWORK = "NETWORK"           # DNS, refused connection, broken socket
    API = "API"                   # Request rejected by the control plane
    WORKLOAD = "WORKLOAD"         # Pod or container failed
    TIMEOUT = "TIMEOUT"           # Deadline exceeded
    CANCELLED = "CANCELLED"       # External cancellation
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


class ConnectionErrorKind(str, Enum):
    AUTH = "auth"
    TLS = "tls"
    UNREACHABLE = "unreachable"


class SubmitErrorKind(str, Enum):
    CONFLICT = "conflict"
    INVALID = "invalid"
    UNREACHABLE = "unreachable"


class WatchErrorKind(str, Enum):
    UNREACHABLE = "unreachable"


class AttachErrorKind(str, Enum):
    NOT_RUNNING = "not_running"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"


@dataclass
class ErrorContext:
    """
    Structured diagnostic context attached to a session error.

    Only populated fields are serialized. ``container_statuses`` holds the
    last observed container states (already reduced to plain dicts) so the
    caller can see why a workload failed or never started.

    Attributes:
        session_id: Session identifier
        namespace: Target namespace
        pod: Pod name (None before submit)
        phase: Last locally tracked phase
        container: Container involved in the failure
        http_status: HTTP status returned by the control plane
        container_statuses: Last known container states
        metadata: Additional key-value pairs
    """

    session_id: str | None = None
    namespace: str | None = None
    pod: str | None = None
    phase: str | None = None
    container: str | None = None
    http_status: int | None = None
    container_statuses: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["session_id", "namespace", "pod", "phase", "container", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.container_statuses:
            result["container_statuses"] = list(self.container_statuses)
        if self.metadata:
            result.update(self.metadata)
        return result


class SessionError(Exception):
    """
    Base exception for every terminal session outcome other than success.

    Subclasses set ``default_category`` and ``default_retryable``; errors
    with sub-cases also carry a ``kind`` enum value. Context can be added
    after creation with :meth:`with_context`, which is how the session
    coordinator stamps pod and phase information onto errors raised by lower
    layers.

    Example:
        >>> try:
        ...     raise OSError("connection reset")
        ... except OSError as exc:
        ...     error = TransportBrokenError("attach stream lost", cause=exc)
        >>> error.cause
        OSError('connection reset')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: Enum | None = None,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SessionError:
        """
        Add context to this error (fluent API).

        Existing values are kept; known fields are set on the context and
        anything else lands in ``context.metadata``.
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            if key == "metadata" or not hasattr(self.context, key):
                self.context.metadata[key] = value
            elif getattr(self.context, key) in (None, []):
                setattr(self.context, key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.kind is not None:
            result["kind"] = self.kind.value
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        if self.kind is not None:
            return f"[{self.kind.value}] {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigValidationError(SessionError):
    """
    The configuration document failed validation.

    ``errors`` holds pydantic's structured error list (``loc``, ``msg``,
    ``type``) so callers can point at the offending field.
    """

    default_category = ErrorCategory.CONFIG

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.errors:
            result["errors"] = self.errors
        return result


# =============================================================================
# CONNECTION / SUBMIT / WATCH
# =============================================================================


class ClusterConnectionError(SessionError):
    """
    The client handle could not be established.

    Only ``UNREACHABLE`` is retryable; rejected credentials and certificate
    failures are fatal.
    """

    default_category = ErrorCategory.NETWORK

    def __init__(self, message: str, *, kind: ConnectionErrorKind, **kwargs: Any):
        kwargs.setdefault("retryable", kind is ConnectionErrorKind.UNREACHABLE)
        kwargs.setdefault("category", _CONNECTION_CATEGORIES[kind])
        super().__init__(message, kind=kind, **kwargs)


_CONNECTION_CATEGORIES = {
    ConnectionErrorKind.AUTH: ErrorCategory.AUTH,
    ConnectionErrorKind.TLS: ErrorCategory.TLS,
    ConnectionErrorKind.UNREACHABLE: ErrorCategory.NETWORK,
}


class SubmitError(SessionError):
    """Creating the Pod failed."""

    default_category = ErrorCategory.API

    def __init__(self, message: str, *, kind: SubmitErrorKind, **kwargs: Any):
        if kind is SubmitErrorKind.UNREACHABLE:
            kwargs.setdefault("category", ErrorCategory.NETWORK)
            kwargs.setdefault("retryable", True)
        super().__init__(message, kind=kind, **kwargs)


class WatchError(SessionError):
    """The status watch could not be re-established within its budget."""

    default_category = ErrorCategory.NETWORK

    def __init__(self, message: str, *, kind: WatchErrorKind = WatchErrorKind.UNREACHABLE, **kwargs: Any):
        super().__init__(message, kind=kind, **kwargs)


# =============================================================================
# WORKLOAD OUTCOMES
# =============================================================================


class PodTimedOut(SessionError):
    """The Pod did not reach Running before the startup deadline."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str, *, timeout_seconds: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class PodFailed(SessionError):
    """A container exited non-zero or the Pod was reported Failed."""

    default_category = ErrorCategory.WORKLOAD

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.reason:
            result["reason"] = self.reason
        return result


class SessionCancelled(SessionError):
    """The session was cancelled before the workload completed."""

    default_category = ErrorCategory.CANCELLED


# =============================================================================
# ATTACHED I/O
# =============================================================================


class AttachError(SessionError):
    """The attach stream could not be opened."""

    default_category = ErrorCategory.API

    def __init__(self, message: str, *, kind: AttachErrorKind, **kwargs: Any):
        if kind is AttachErrorKind.UNREACHABLE:
            kwargs.setdefault("category", ErrorCategory.NETWORK)
        elif kind is AttachErrorKind.NOT_RUNNING:
            kwargs.setdefault("category", ErrorCategory.INTERNAL)
        super().__init__(message, kind=kind, **kwargs)


class TransportBrokenError(SessionError):
    """The attach connection broke mid-session. It is never reconnected."""

    default_category = ErrorCategory.NETWORK


class ChannelClosedError(SessionError):
    """Write attempted after ``close_write()`` or ``close()``."""

    default_category = ErrorCategory.INTERNAL


class DeleteError(SessionError):
    """Deleting the Pod failed. Logged, never raised to the caller."""

    default_category = ErrorCategory.API
    default_retryable = True
