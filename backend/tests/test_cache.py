"""
Query cache tests
"""
from cache import TTLCache


class Tick:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class TestTTLCache:
    """Advisory cache: expiry, invalidation, bounded size"""

    def test_expires_after_ttl(self):
        tick = Tick()
        cache = TTLCache(2, clock=tick)
        cache.set("round:roulette", {"id": "r1"})
        tick.t = 1.9
        assert cache.get("round:roulette") == {"id": "r1"}
        tick.t = 2.0
        assert cache.get("round:roulette") is None

    def test_invalidate(self):
        cache = TTLCache(60)
        cache.set("a", 1)
        cache.invalidate("a")
        assert "a" not in cache

    def test_invalidate_prefix(self):
        cache = TTLCache(60)
        cache.set("bets:r1", [1])
        cache.set("bets:r2", [2])
        cache.set("recent:roulette", [3])
        cache.invalidate_prefix("bets:")
        assert "bets:r1" not in cache and "bets:r2" not in cache
        assert cache.get("recent:roulette") == [3]

    def test_max_entries_refuses_new_keys(self):
        tick = Tick()
        cache = TTLCache(10, max_entries=2, clock=tick)
        cache.set("a", 1)
        assert cache.set("b", 2) is True
        assert cache.set("c", 3) is False
        assert cache.get("c") is None
        assert len(cache) == 2

    def test_max_entries_evicts_expired(self):
        tick = Tick()
        cache = TTLCache(10, max_entries=2, clock=tick)
        cache.set("a", 1)
        cache.set("b", 2)
        tick.t = 11
        cache.set("c", 3)
        assert cache.get("c") == 3

    async def test_get_or_load_caches(self):
        cache = TTLCache(60)
        calls = []

        async def loader():
            calls.append(1)
            return {"value": len(calls)}

        first = await cache.get_or_load("k", loader)
        second = await cache.get_or_load("k", loader)
        assert first == second == {"value": 1}
        assert len(calls) == 1

    async def test_get_or_load_skips_none(self):
        cache = TTLCache(60)

        async def loader():
            return None

        assert await cache.get_or_load("k", loader) is None
        assert len(cache) == 0

    async def test_invalidation_during_load_is_not_cached(self):
        cache = TTLCache(60)

        async def loader():
            cache.invalidate("round:roulette")
            return {"status": "open"}

        assert await cache.get_or_load("round:roulette", loader) == {"status": "open"}
        assert "round:roulette" not in cache

    async def test_prefix_invalidation_during_load_is_not_cached(self):
        cache = TTLCache(60)

        async def loader():
            cache.invalidate_prefix("bets:")
            return [1]

        await cache.get_or_load("bets:r1", loader)
        assert "bets:r1" not in cache
        await cache.get_or_load("bets:r1", lambda: _value([2]))
        assert cache.get("bets:r1") == [2]


async def _value(value):
    return value
