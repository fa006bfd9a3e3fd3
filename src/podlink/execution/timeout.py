"""Deadline tracking and timeout enforcement.

Two things in a session are time-bounded: the startup deadline (submit to
``Running``) and individual control-plane calls that must not hold up
teardown (delete). Both use the monotonic clock.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────────┐
        │ deadline = DeadlineContext.after(300.0, "pod startup")          │
        │ ...                                                             │
        │ await asyncio.wait_for(queue.get(), deadline.remaining())       │
        │ if deadline.remaining() <= 0: -> TIMED_OUT                      │
        └────────────────────────────────────────────────────────────────┘

        ┌────────────────────────────────────────────────────────────────┐
        │ await run_with_timeout_async(delete(), 5.0, "pod delete")       │
        │ # Raises TimeoutExpired if > 5 seconds                          │
        └────────────────────────────────────────────────────────────────┘

Examples:
    >>> deadline = DeadlineContext.after(30.0, operation="pod startup")
    >>> deadline.remaining() > 29
    True

Tags:
    timeout, deadline, resilience, execution, podlink

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """Raised when an operation exceeds its deadline.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the operation ran before being interrupted
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        msg = f"Operation '{operation}' timed out after {timeout}s"

        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"

        super().__init__(msg)


@dataclass
class DeadlineContext:
    """Context for tracking deadline state.

    Attributes:
        deadline: Absolute deadline timestamp (monotonic clock)
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the operation
        start_time: When the deadline context started
    """

    deadline: float
    timeout_seconds: float
    operation: str = "operation"
    start_time: float = field(default_factory=time.monotonic)

    @classmethod
    def after(cls, seconds: float, operation: str = "operation") -> DeadlineContext:
        """Create a deadline ``seconds`` from now."""
        if seconds < 0:
            raise ValueError(f"Timeout must be non-negative, got {seconds}")
        now = time.monotonic()
        return cls(deadline=now + seconds, timeout_seconds=seconds, operation=operation, start_time=now)

    def remaining(self) -> float:
        """Remaining time until deadline in seconds.

        Returns:
            Positive value if time remains, negative if expired.
        """
        return self.deadline - time.monotonic()

    @property
    def elapsed(self) -> float:
        """Elapsed time since start in seconds."""
        return time.monotonic() - self.start_time


async def run_with_timeout_async(
    coro: Awaitable[T],
    timeout_seconds: float,
    operation: str | None = None,
) -> T:
    """Run a coroutine with a timeout.

    Args:
        coro: Coroutine to execute
        timeout_seconds: Maximum execution time
        operation: Name for error messages

    Returns:
        Result of the coroutine

    Raises:
        TimeoutExpired: If execution exceeds timeout
        Exception: Any exception raised by the coroutine

    Example:
        >>> await run_with_timeout_async(
        ...     handle.delete_pod("default", "runner-x"),
        ...     5.0,
        ...     operation="pod delete",
        ... )
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()

    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except TimeoutError:
        elapsed = time.monotonic() - start
        raise TimeoutExpired(
            timeout=timeout_seconds,
            elapsed=elapsed,
            operation=operation or "operation",
        ) from None
