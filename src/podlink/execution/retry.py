"""Retry strategies with exponential backoff and jitter.

Used for the two bounded retry loops of a session: establishing the
cluster connection and re-establishing a dropped status watch. Neither
loop retries forever; ``max_attempts`` is the total number of tries.

Example:
    >>> from podlink.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_attempts=3, base_delay=0.5, max_delay=5.0)
    >>> for attempt in range(3):
    ...     delay = strategy.next_delay(attempt)
    ...     print(f"Attempt {attempt}: wait {delay:.2f}s")
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_attempts: Total attempts, including the first one
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
        retry_if: Predicate deciding whether an error is worth retrying (None = all)
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retry_if: Callable[[BaseException], bool] | None = None

    def next_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay for a zero-based retry number."""
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)  # Ensure non-negative

        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Check if another attempt is allowed after ``attempt`` tries."""
        if attempt >= self.max_attempts:
            return False

        if error is not None and self.retry_if is not None:
            return self.retry_if(error)

        return True


@dataclass
class RetryContext:
    """Context tracking retry state.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_attempts=3))
        >>> handle = await ctx.run_async(manager.connect_once, connection)
    """

    strategy: ExponentialBackoff
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    errors: list[tuple[int, Exception]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    async def run_async(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute async function with retry logic.

        Args:
            func: Async function to execute
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result from successful function call

        Raises:
            Last exception if all retries exhausted or the error is not retryable
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.errors.append((self.attempt, e))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                await asyncio.sleep(delay)
