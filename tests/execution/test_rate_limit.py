"""Tests for the client-side token bucket."""

import asyncio
import threading
import time

import pytest

from podlink.execution.rate_limit import TokenBucketLimiter


class TestTokenBucketLimiter:
    """Tests for TokenBucketLimiter."""

    def test_configuration(self):
        """Test configuration values."""
        limiter = TokenBucketLimiter(rate=5.0, capacity=10)
        assert limiter.rate == 5.0
        assert limiter.capacity == 10

    @pytest.mark.parametrize("rate,capacity", [(0, 1), (-1.0, 1), (1.0, 0)])
    def test_rejects_invalid_configuration(self, rate, capacity):
        """Test non-positive rate and empty bucket are rejected."""
        with pytest.raises(ValueError):
            TokenBucketLimiter(rate=rate, capacity=capacity)

    def test_initial_tokens(self):
        """Test starts with full bucket."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)

        # Should be able to acquire 5 tokens immediately
        for _ in range(5):
            assert limiter.acquire() is True

        # 6th should fail (bucket empty)
        assert limiter.acquire() is False

    def test_tokens_refill_over_time(self):
        """Test tokens refill over time."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)

        for _ in range(5):
            limiter.acquire()

        # 10 per second = 0.1s per token
        time.sleep(0.15)

        assert limiter.acquire() is True

    def test_bucket_doesnt_exceed_capacity(self):
        """Test tokens don't exceed capacity."""
        limiter = TokenBucketLimiter(rate=100.0, capacity=5)

        time.sleep(0.2)

        acquired = 0
        while limiter.acquire():
            acquired += 1

        assert acquired == 5

    def test_acquire_multiple_tokens(self):
        """Test acquiring multiple tokens at once."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=10)

        assert limiter.acquire(5) is True
        assert limiter.acquire(5) is True
        assert limiter.acquire(1) is False

    def test_acquire_more_than_capacity_raises(self):
        """Test a request that could never be granted is an error, not a hang."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)

        with pytest.raises(ValueError):
            limiter.acquire(10, block=True)

    def test_wait_time_calculation(self):
        """Test wait time calculation."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)
        assert limiter.get_wait_time() == 0.0

        for _ in range(5):
            limiter.acquire()

        wait_time = limiter.get_wait_time(1)
        assert 0.05 <= wait_time <= 0.2

    def test_granted_counter(self):
        """Test granted counts every token handed out."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)
        limiter.acquire()
        limiter.acquire(2)
        limiter.acquire(5)  # refused

        assert limiter.granted == 3
        assert limiter.available_tokens < 3

    @pytest.mark.slow
    @pytest.mark.timeout(2)
    def test_acquire_with_blocking(self):
        """Test blocking acquire waits for tokens."""
        limiter = TokenBucketLimiter(rate=20.0, capacity=2)

        limiter.acquire(2)

        start = time.monotonic()
        result = limiter.acquire(1, block=True)
        elapsed = time.monotonic() - start

        assert result is True
        # ~0.05s for 1 token at 20/sec
        assert elapsed >= 0.03


class TestThrottlingAcrossCallers:
    """The bucket bounds the aggregate rate of every caller sharing it."""

    @pytest.mark.slow
    @pytest.mark.timeout(10)
    def test_three_calls_at_one_qps_take_two_seconds(self):
        """Test qps=1, burst=1: the 2nd and 3rd call each wait a full second."""
        limiter = TokenBucketLimiter(rate=1.0, capacity=1)

        start = time.monotonic()
        for _ in range(3):
            limiter.acquire(block=True)
        elapsed = time.monotonic() - start

        assert 1.9 <= elapsed < 3.0

    @pytest.mark.slow
    @pytest.mark.timeout(10)
    def test_threads_share_one_budget(self):
        """Test concurrent threads cannot exceed burst plus refill."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=5)
        done: list[float] = []
        start = time.monotonic()

        def worker():
            limiter.acquire(block=True)
            done.append(time.monotonic() - start)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert limiter.granted == 10
        # 5 from the burst, 5 more at 10/sec
        assert max(done) >= 0.4

    @pytest.mark.asyncio
    @pytest.mark.slow
    @pytest.mark.timeout(10)
    async def test_acquire_async_suspends_without_blocking_the_loop(self):
        """Test acquire_async waits in the event loop, other tasks keep running."""
        limiter = TokenBucketLimiter(rate=10.0, capacity=1)
        limiter.acquire()
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        start = time.monotonic()
        await limiter.acquire_async()
        elapsed = time.monotonic() - start
        task.cancel()

        assert elapsed >= 0.05
        assert ticks >= 3
