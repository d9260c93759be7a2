"""
Unit tests for the rate limiting primitives used by the API middleware.
"""
import pytest

from taskguard.api.middleware import (
    FixedWindowRateLimiter,
    SystemLoadMonitor,
    apply_high_load_reduction,
    default_rate_limit,
)
from taskguard.services.subscription_service import RateLimit


class FakeTimer:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFixedWindowRateLimiter:

    def test_admits_limit_then_rejects(self):
        timer = FakeTimer()
        limiter = FixedWindowRateLimiter(timer=timer)

        leases = [limiter.acquire(("user", 1, "/api/v1/tasks"), 3, 60) for _ in range(4)]

        assert [lease.acquired for lease in leases] == [True, True, True, False]
        assert [lease.remaining for lease in leases] == [2, 1, 0, 0]
        assert all(lease.reset_at == 1060.0 for lease in leases)

    def test_window_restarts_after_expiry(self):
        timer = FakeTimer()
        limiter = FixedWindowRateLimiter(timer=timer)
        key = ("ip", "203.0.113.5", "/api/v1/auth/login")

        limiter.acquire(key, 1, 60)
        assert limiter.acquire(key, 1, 60).acquired is False

        timer.now += 60
        lease = limiter.acquire(key, 1, 60)
        assert lease.acquired is True
        assert lease.reset_at == 1120.0

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(timer=FakeTimer())

        assert limiter.acquire(("user", 1, "/a"), 1, 60).acquired
        assert limiter.acquire(("user", 2, "/a"), 1, 60).acquired
        assert limiter.acquire(("user", 1, "/b"), 1, 60).acquired
        assert len(limiter) == 3

    def test_expired_windows_purged_at_capacity(self):
        timer = FakeTimer()
        limiter = FixedWindowRateLimiter(timer=timer, max_tracked_keys=2)
        limiter.acquire("a", 5, 10)
        limiter.acquire("b", 5, 10)

        timer.now += 10
        limiter.acquire("c", 5, 10)

        assert len(limiter) == 1

    def test_purge_uses_each_keys_own_window(self):
        timer = FakeTimer(now=0.0)
        limiter = FixedWindowRateLimiter(timer=timer, max_tracked_keys=3)
        assert limiter.acquire("hourly", 1, 3600).acquired is True
        assert limiter.acquire("hourly", 1, 3600).acquired is False

        timer.now = 100.0
        limiter.acquire("a", 1, 30)
        timer.now = 130.0
        limiter.acquire("b", 1, 30)
        timer.now = 140.0
        limiter.acquire("c", 1, 30)

        assert len(limiter) == 3
        assert limiter.acquire("hourly", 1, 3600) == (False, 0, 3600.0)

    def test_live_windows_never_exceed_capacity(self):
        timer = FakeTimer()
        limiter = FixedWindowRateLimiter(timer=timer, max_tracked_keys=2)
        for key in ("a", "b", "c"):
            limiter.acquire(key, 1, 60)
            timer.now += 1

        assert len(limiter) == 2
        assert limiter.acquire("a", 1, 60).acquired is True
        assert limiter.acquire("c", 1, 60).acquired is False

    def test_reset(self):
        limiter = FixedWindowRateLimiter(timer=FakeTimer())
        limiter.acquire("a", 1, 60)
        limiter.reset()

        assert limiter.acquire("a", 1, 60).acquired is True


class TestSystemLoadMonitor:

    def test_high_load_when_cpu_or_memory_over_threshold(self):
        samples = iter([(50.0, 40.0), (85.0, 40.0), (20.0, 95.0), (10.0, 10.0)])
        timer = FakeTimer()
        monitor = SystemLoadMonitor(threshold_percent=80, interval_seconds=30, sampler=lambda: next(samples), timer=timer)

        results = []
        for _ in range(4):
            results.append(monitor.check())
            timer.now += 30

        assert results == [False, True, True, False]

    def test_samples_at_most_once_per_interval(self):
        calls = []

        def sampler():
            calls.append(1)
            return 90.0, 10.0

        timer = FakeTimer()
        monitor = SystemLoadMonitor(sampler=sampler, timer=timer)

        assert monitor.check() is True
        timer.now += 29
        assert monitor.check() is True
        assert len(calls) == 1

        timer.now += 1
        monitor.check()
        assert len(calls) == 2

    def test_sampler_failure_clears_flag(self):
        def sampler():
            raise OSError("no /proc")

        monitor = SystemLoadMonitor(sampler=sampler, timer=FakeTimer())
        monitor.is_high_load = True

        assert monitor.check() is False


class TestLimitHelpers:

    @pytest.mark.parametrize("limit,reduction,expected", [
        (60, 50, 30),
        (20, 50, 10),
        (8, 50, 5),
        (3, 0, 5),
        (101, 50, 50),
    ])
    def test_high_load_reduction_floor(self, limit, reduction, expected):
        assert apply_high_load_reduction(limit, reduction) == expected

    @pytest.mark.parametrize("endpoint,expected", [
        ("/api/v1/auth/login", RateLimit(5, 60)),
        ("/api/v1/Auth/Register", RateLimit(5, 60)),
        ("/api/v1/auth/refresh-token", RateLimit(5, 60)),
        ("/api/v1/tasks/12", RateLimit(20, 30)),
        ("/api/v1/taskitems", RateLimit(20, 30)),
        ("/api/v1/profile", RateLimit(30, 60)),
    ])
    def test_default_rate_limit_by_endpoint_class(self, test_settings, endpoint, expected):
        assert default_rate_limit(endpoint, test_settings) == expected
