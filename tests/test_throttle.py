"""Tests for the per-provider rate limiter."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import wait_until
from hexharvest.throttle import RateLimiter


class TestRateLimiter:
    def test_min_time_spacing(self):
        """Consecutive starts are at least min_time apart."""
        limiter = RateLimiter(max_concurrent=4, min_time=0.05)
        starts = []
        for _ in range(3):
            limiter.acquire()
            starts.append(time.monotonic())
            limiter.release()
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(g >= 0.045 for g in gaps)
        assert limiter.started == 3
        assert limiter.running == 0

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RateLimiter(max_concurrent=0)
        with pytest.raises(ValueError):
            RateLimiter(min_time=-1)

    def test_schedule_bounds_concurrency(self):
        """Scheduled jobs never exceed max_concurrent at once."""
        limiter = RateLimiter(max_concurrent=2, name="test")
        lock = threading.Lock()
        active = [0]
        peak = [0]
        done = []

        def job(i):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1
                done.append(i)

        with ThreadPoolExecutor(max_workers=6) as executor:
            for i in range(8):
                limiter.schedule(executor, job, i)
            assert wait_until(lambda: len(done) == 8)
        limiter.close()
        assert peak[0] <= 2
        assert sorted(done) == list(range(8))
        assert wait_until(lambda: limiter.running == 0)

    def test_shutdown_executor_releases_slot(self):
        limiter = RateLimiter(max_concurrent=1)
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown()
        limiter.schedule(executor, print, "never")
        assert wait_until(lambda: limiter.pending() == 0 and limiter.running == 0)
        limiter.close()
