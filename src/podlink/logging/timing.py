"""
Timing helpers for session steps.

``log_step`` wraps a step (connect, submit, attach, delete) and logs its
duration:

- Start: DEBUG (``event.start``)
- End: INFO (``event.end``) with ``duration_ms``
- Error: ERROR (``event.error``) with the error type, then re-raised

Cancellation is not an error: ``asyncio.CancelledError`` passes through
without an error log.
"""

import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from podlink.logging.context import get_logger, push_context


@dataclass
class TimingResult:
    """Result of a timed step."""

    step: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    started_at: float = field(default_factory=time.perf_counter)
    ended_at: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def stop(self) -> "TimingResult":
        self.ended_at = time.perf_counter()
        return self

    @property
    def duration_ms(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.perf_counter()
        return (end - self.started_at) * 1000

    def add_metric(self, key: str, value: Any) -> "TimingResult":
        """Add a metric to include in the end log."""
        self.metrics[key] = value
        return self

    def to_log_dict(self) -> dict[str, Any]:
        result = {"duration_ms": round(self.duration_ms, 2), "span_id": self.span_id}
        result.update(self.metrics)
        return result


@contextmanager
def log_step(event: str, level: str = "info", **extra_metrics) -> Iterator[TimingResult]:
    """
    Context manager that logs step start/end with timing.

    Usage:
        with log_step("pod.submit", namespace="default") as timer:
            deployment = await controller.submit(...)
            timer.add_metric("pod", deployment.name)
    """
    log = get_logger("podlink.timing")
    timer = TimingResult(step=event, metrics=dict(extra_metrics))
    context_token = push_context(step=event, span_id=timer.span_id)

    try:
        log.debug(f"{event}.start", span_id=timer.span_id, **extra_metrics)
        yield timer
    except Exception as e:
        timer.stop()
        log.error(
            f"{event}.error",
            error_type=type(e).__name__,
            error_message=str(e),
            **timer.to_log_dict(),
        )
        raise
    finally:
        timer.stop()
        context_token.restore()

    getattr(log, level)(f"{event}.end", **timer.to_log_dict())
