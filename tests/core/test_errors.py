"""Tests for the session error hierarchy."""

import pytest

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


class TestErrorContext:
    """Tests for ErrorContext serialization."""

    def test_empty_context_serializes_to_empty_dict(self):
        """Test unset fields are left out."""
        assert ErrorContext().to_dict() == {}

    def test_populated_fields_and_metadata(self):
        """Test populated fields, statuses and metadata are flattened."""
        context = ErrorContext(
            namespace="default",
            pod="runner-1",
            phase="failed",
            container_statuses=[{"name": "main", "state": "terminated", "exit_code": 1}],
            metadata={"host": "cluster.local"},
        )
        data = context.to_dict()
        assert data["pod"] == "runner-1"
        assert data["container_statuses"][0]["exit_code"] == 1
        assert data["host"] == "cluster.local"
        assert "session_id" not in data


class TestSessionError:
    """Tests for the SessionError base class."""

    def test_defaults(self):
        """Test default category and retryability."""
        error = SessionError("boom")
        assert error.category is ErrorCategory.INTERNAL
        assert error.retryable is False
        assert error.kind is None
        assert str(error) == "boom"

    def test_cause_is_chained(self):
        """Test the cause becomes __cause__."""
        cause = OSError("connection reset")
        error = TransportBrokenError("attach stream lost", cause=cause)
        assert error.cause is cause
        assert error.__cause__ is cause

    def test_with_context_keeps_existing_values(self):
        """Test with_context fills blanks and routes unknown keys to metadata."""
        error = SessionError("boom", context=ErrorContext(pod="first"))
        error.with_context(pod="second", namespace="default", attempt=3, phase=None)

        assert error.context.pod == "first"
        assert error.context.namespace == "default"
        assert error.context.phase is None
        assert error.context.metadata == {"attempt": 3}

    def test_to_dict(self):
        """Test serialization for structured logs."""
        error = SubmitError("taken", kind=SubmitErrorKind.CONFLICT, cause=ValueError("409"))
        error.with_context(pod="runner-1")
        data = error.to_dict()

        assert data["error_type"] == "SubmitError"
        assert data["kind"] == "conflict"
        assert data["category"] == "API"
        assert data["context"] == {"pod": "runner-1"}
        assert data["cause"] == "409"

    def test_str_includes_kind(self):
        """Test kinds are shown in the message."""
        error = AttachError("pod is pending", kind=AttachErrorKind.NOT_RUNNING)
        assert str(error) == "[not_running] pod is pending"


class TestConnectionErrors:
    """Only unreachable clusters are worth retrying."""

    @pytest.mark.parametrize(
        "kind,category,retryable",
        [
            (ConnectionErrorKind.AUTH, ErrorCategory.AUTH, False),
            (ConnectionErrorKind.TLS, ErrorCategory.TLS, False),
            (ConnectionErrorKind.UNREACHABLE, ErrorCategory.NETWORK, True),
        ],
    )
    def test_kind_sets_category_and_retryable(self, kind, category, retryable):
        """Test each kind maps onto its category and retry semantics."""
        error = ClusterConnectionError("nope", kind=kind)
        assert error.kind is kind
        assert error.category is category
        assert error.retryable is retryable


class TestStageErrors:
    """Tests for the per-stage error types."""

    def test_submit_unreachable_is_network(self):
        """Test transport failures during submit are network errors."""
        error = SubmitError("timeout", kind=SubmitErrorKind.UNREACHABLE)
        assert error.category is ErrorCategory.NETWORK
        assert error.retryable is True

    def test_submit_invalid_is_api(self):
        """Test rejected manifests are API errors, not retryable."""
        error = SubmitError("bad", kind=SubmitErrorKind.INVALID)
        assert error.category is ErrorCategory.API
        assert error.retryable is False

    def test_watch_error_default_kind(self):
        """Test WatchError defaults to UNREACHABLE."""
        assert WatchError("lost").kind is WatchErrorKind.UNREACHABLE

    def test_attach_kinds(self):
        """Test attach error categories per kind."""
        assert AttachError("x", kind=AttachErrorKind.UNREACHABLE).category is ErrorCategory.NETWORK
        assert AttachError("x", kind=AttachErrorKind.REJECTED).category is ErrorCategory.API
        assert AttachError("x", kind=AttachErrorKind.NOT_RUNNING).category is ErrorCategory.INTERNAL

    def test_pod_failed_carries_exit_code(self):
        """Test PodFailed exposes exit code and reason."""
        error = PodFailed("workload failed", exit_code=3, reason="Error")
        data = error.to_dict()
        assert error.exit_code == 3
        assert data["exit_code"] == 3
        assert data["reason"] == "Error"
        assert error.category is ErrorCategory.WORKLOAD

    def test_timeout_and_cancel_categories(self):
        """Test timed out and cancelled sessions are classified."""
        assert PodTimedOut("slow", timeout_seconds=5).category is ErrorCategory.TIMEOUT
        assert PodTimedOut("slow", timeout_seconds=5).timeout_seconds == 5
        assert SessionCancelled("stop").category is ErrorCategory.CANCELLED

    def test_delete_error_is_retryable(self):
        """Test delete failures are marked retryable."""
        assert DeleteError("500").retryable is True

    def test_channel_closed_is_session_error(self):
        """Test channel errors share the hierarchy."""
        assert isinstance(ChannelClosedError("closed"), SessionError)

    def test_config_validation_error_keeps_errors(self):
        """Test pydantic error list is kept and serialized."""
        errors = [{"loc": "connection.qps", "msg": "must be > 0", "type": "greater_than"}]
        error = ConfigValidationError("invalid", errors=errors)
        assert error.category is ErrorCategory.CONFIG
        assert error.to_dict()["errors"] == errors
