"""Tests for the eligibility TTL cache."""

from __future__ import annotations

from insurance_verifier.core.cache import InMemoryCache, eligibility_cache_key


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryCache:
    def test_key_format(self) -> None:
        assert eligibility_cache_key("abc") == "insurance:eligibility:abc"

    def test_hit_within_ttl(self) -> None:
        clock = _Clock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", {"status": "VERIFIED"}, ttl=86400)
        clock.now += 86399
        assert cache.get("k") == {"status": "VERIFIED"}

    def test_expired_entry_is_a_miss(self) -> None:
        clock = _Clock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", "v", ttl=10)
        clock.now += 10
        assert cache.get("k") is None
        assert cache.get_stats()["size"] == 0

    def test_eviction_drops_least_recently_used(self) -> None:
        cache = InMemoryCache(max_size=2, clock=_Clock())
        cache.set("a", 1, ttl=500)
        cache.set("b", 2, ttl=500)
        assert cache.get("a") == 1
        cache.set("c", 3, ttl=500)
        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3
        assert cache.get_stats()["size"] == 2

    def test_non_positive_ttl_is_not_stored(self) -> None:
        cache = InMemoryCache(clock=_Clock())
        cache.set("k", "v", ttl=0)
        assert cache.get("k") is None

    def test_stats(self) -> None:
        cache = InMemoryCache()
        cache.set("k", 1, ttl=60)
        cache.get("k")
        cache.get("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 50.0

    def test_delete_and_clear(self) -> None:
        cache = InMemoryCache()
        cache.set("a", 1, ttl=60)
        cache.set("b", 2, ttl=60)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.get("b") is None
