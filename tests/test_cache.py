from app.services.cache import EphemeralCache


class TestEphemeralCache:
    def test_get_returns_value_within_ttl(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("profile:1", {"id": 1}, ttl_seconds=300)
        clock.advance(299)
        assert cache.get("profile:1") == {"id": 1}

    def test_expired_entry_is_missing_and_removed(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("profile:1", "value", ttl_seconds=10)
        clock.advance(11)

        assert cache.get("profile:1") is None
        assert cache.stats()["size"] == 0

    def test_missing_key_returns_none(self, clock):
        cache = EphemeralCache(clock=clock)
        assert cache.get("nope") is None

    def test_set_overwrites_and_restarts_ttl(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("k", "old", ttl_seconds=10)
        clock.advance(8)
        cache.set("k", "new", ttl_seconds=10)
        clock.advance(8)
        assert cache.get("k") == "new"

    def test_delete_and_clear(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("a", 1, 60)
        cache.set("b", 2, 60)

        cache.delete("a")
        cache.delete("missing")
        assert cache.get("a") is None
        assert cache.get("b") == 2

        cache.clear()
        assert cache.stats()["size"] == 0


class TestCacheStats:
    def test_hits_and_misses_counted_on_every_get(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("k", "v", 60)

        cache.get("k")
        cache.get("k")
        cache.get("other")
        clock.advance(61)
        cache.get("k")

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 2
        assert stats["hit_rate"] == 0.5

    def test_hit_rate_zero_without_reads(self):
        assert EphemeralCache().stats()["hit_rate"] == 0.0


class TestSweep:
    def test_sweep_removes_only_expired(self, clock):
        cache = EphemeralCache(clock=clock)
        cache.set("short", 1, 5)
        cache.set("long", 2, 500)
        clock.advance(10)

        assert cache.sweep() == 1
        assert cache.stats()["size"] == 1
        assert cache.get("long") == 2
