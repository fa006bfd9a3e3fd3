"""Rate Limiting — token-bucket throttling of control-plane calls.

Manifesto:
The Kubernetes API server applies priority and fairness limits per
client. A session that hammers it while a Pod is scheduling gets 429s
or starves other clients. One limiter per client handle bounds the
*aggregate* call rate of a session (submit, watch, attach, read,
delete), not a per-call-type rate.

ARCHITECTURE
────────────
::

    TokenBucketLimiter
      ├── acquire(tokens, block)   ─ thread callers; blocks via time.sleep
      └── acquire_async(tokens)    ─ event-loop callers; suspends via asyncio.sleep

    Bucket starts full (burst), refills at ``rate`` tokens per second.
    Internal Lock makes it safe to share across threads and tasks.

A blocking acquire never drops a request: it waits until the bucket has
refilled enough, however long that takes.

Example::

    limiter = TokenBucketLimiter(rate=5, capacity=10)
    await limiter.acquire_async()
    pod = await asyncio.to_thread(api.read_pod, "default", "runner-x")

Tags:
    podlink, execution, rate-limit, throttle, token-bucket

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field


@dataclass
class TokenBucketLimiter:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to capacity.
    Allows bursts up to capacity, then limits to rate.

    Attributes:
        rate: Tokens added per second (the connection's ``qps``)
        capacity: Maximum tokens (the connection's ``burst``)
    """

    rate: float  # tokens per second
    capacity: float  # max tokens

    _tokens: float = field(default=0.0, init=False)
    _last_update: float = field(default_factory=time.monotonic, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _granted: int = field(default=0, init=False)

    def __post_init__(self):
        """Validate and start with a full bucket."""
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        if self.capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {self.capacity}")
        self._tokens = self.capacity

    def _refill(self) -> None:
        """Add tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self._last_update
        self._tokens = min(
            self.capacity,
            self._tokens + (elapsed * self.rate),
        )
        self._last_update = now

    def _try_take(self, tokens: int) -> float:
        """Take tokens if available. Returns 0.0 on success, else the wait time."""
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                self._granted += tokens
                return 0.0
            return (tokens - self._tokens) / self.rate

    def acquire(self, tokens: int = 1, block: bool = False) -> bool:
        """Attempt to acquire tokens.

        Args:
            tokens: Number of tokens to acquire
            block: If True, sleep until the tokens are available

        Returns:
            True if tokens acquired, False only when ``block`` is False
        """
        while True:
            wait_time = self._try_take(tokens)
            if wait_time == 0.0:
                return True
            if not block:
                return False
            # Lock is released while sleeping
            time.sleep(wait_time)

    async def acquire_async(self, tokens: int = 1) -> None:
        """Suspend the calling task until the tokens are acquired."""
        while True:
            wait_time = self._try_take(tokens)
            if wait_time == 0.0:
                return
            await asyncio.sleep(wait_time)

    def get_wait_time(self, tokens: int = 1) -> float:
        """Get seconds until tokens available."""
        with self._lock:
            self._refill()

            if self._tokens >= tokens:
                return 0.0

            needed = tokens - self._tokens
            return needed / self.rate

    @property
    def available_tokens(self) -> float:
        """Get current available tokens."""
        with self._lock:
            self._refill()
            return self._tokens

    @property
    def granted(self) -> int:
        """Total tokens handed out since creation."""
        with self._lock:
            return self._granted
