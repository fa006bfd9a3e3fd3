"""Core primitives shared by every podlink layer."""

from podlink.core.errors import (
    AttachError,
    AttachErrorKind,
    ChannelClosedError,
    ClusterConnectionError,
    ConfigValidationError,
    ConnectionErrorKind,
    DeleteError,
    ErrorCategory,
    ErrorContext,
    PodFailed,
    PodTimedOut,
    SessionCancelled,
    SessionError,
    SubmitError,
    SubmitErrorKind,
    TransportBrokenError,
    WatchError,
    WatchErrorKind,
)

__all__ = [
    "AttachError",
    "AttachErrorKind",
    "ChannelClosedError",
    "ClusterConnectionError",
    "ConfigValidationError",
    "ConnectionErrorKind",
    "DeleteError",
    "ErrorCategory",
    "ErrorContext",
    "PodFailed",
    "PodTimedOut",
    "SessionCancelled",
    "SessionError",
    "SubmitError",
    "SubmitErrorKind",
    "TransportBrokenError",
    "WatchError",
    "WatchErrorKind",
]
