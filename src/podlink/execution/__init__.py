"""Execution primitives: throttling, retry and deadlines."""

from podlink.execution.rate_limit import TokenBucketLimiter
from podlink.execution.retry import ExponentialBackoff, RetryContext
from podlink.execution.timeout import DeadlineContext, TimeoutExpired, run_with_timeout_async

__all__ = [
    "DeadlineContext",
    "ExponentialBackoff",
    "RetryContext",
    "TimeoutExpired",
    "TokenBucketLimiter",
    "run_with_timeout_async",
]
