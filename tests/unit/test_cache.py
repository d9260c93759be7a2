"""
Unit tests for the TTL cache used by tier and rule resolution.
"""
from datetime import timedelta

from taskguard.core.cache import RuleCacheKey, TierCacheKey, TTLCache


class TestTTLCache:

    def test_value_served_until_expiry(self, clock):
        cache = TTLCache(clock=clock)
        cache.set(TierCacheKey(1), "Free", timedelta(minutes=15))

        clock.advance(minutes=14, seconds=59)
        assert cache.get(TierCacheKey(1)) == "Free"

        clock.advance(seconds=1)
        assert cache.get(TierCacheKey(1)) is None
        assert len(cache) == 0

    def test_hit_and_miss_counters(self, clock):
        cache = TTLCache(clock=clock)
        cache.set(TierCacheKey(1), "Free", timedelta(minutes=1))

        cache.get(TierCacheKey(1))
        cache.get(TierCacheKey(2))

        assert cache.hits == 1
        assert cache.misses == 1

    def test_keys_are_typed(self, clock):
        cache = TTLCache(clock=clock)
        cache.set(RuleCacheKey(1, "/api/v1/tasks"), (20, 30), timedelta(minutes=30))

        assert RuleCacheKey(1, "/api/v1/tasks") in cache
        assert RuleCacheKey(2, "/api/v1/tasks") not in cache
        assert TierCacheKey(1) not in cache

    def test_invalidate_and_clear(self, clock):
        cache = TTLCache(clock=clock)
        cache.set(TierCacheKey(1), "Free", timedelta(minutes=1))
        cache.set(TierCacheKey(2), "Premium", timedelta(minutes=1))

        assert cache.invalidate(TierCacheKey(1)) is True
        assert cache.invalidate(TierCacheKey(1)) is False
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0

    def test_set_replaces_value_and_expiry(self, clock):
        cache = TTLCache(clock=clock)
        cache.set(TierCacheKey(1), "Free", timedelta(minutes=1))
        clock.advance(seconds=50)
        cache.set(TierCacheKey(1), "Premium", timedelta(minutes=1))

        clock.advance(seconds=50)
        assert cache.get(TierCacheKey(1)) == "Premium"
