"""
Security tests
Tests for: bet and endpoint rate limiters, path config, username sanitizing, exploit flags
"""
from security import (
    BetRateLimiter,
    EndpointRateLimiter,
    check_impossible_gain,
    check_negative_balance,
    clear_old_security_flags,
    get_rate_limit_for_path,
    get_security_summary,
    sanitize_username,
    BET_PATH_RE,
)


class Tick:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


class TestBetRateLimiter:
    """One bet per account per interval"""

    def test_second_bet_inside_interval_blocked(self):
        tick = Tick()
        limiter = BetRateLimiter(1.0, clock=tick)
        assert limiter.allow("acc-1")
        assert not limiter.allow("acc-1")
        assert limiter.allow("acc-2")

    def test_allowed_after_interval(self):
        tick = Tick()
        limiter = BetRateLimiter(1.0, clock=tick)
        assert limiter.allow("acc-1")
        tick.t += 1.0
        assert limiter.allow("acc-1")

    def test_zero_interval_disables(self):
        limiter = BetRateLimiter(0)
        assert all(limiter.allow("acc-1") for _ in range(5))

    def test_full_limiter_blocks_instead_of_forgetting(self):
        tick = Tick()
        limiter = BetRateLimiter(1.0, clock=tick, max_entries=2)
        assert limiter.allow("acc-1")
        assert limiter.allow("acc-2")
        assert not limiter.allow("acc-3")
        tick.t += 1.0
        assert limiter.allow("acc-3")


class TestEndpointRateLimiter:
    """Sliding one-minute windows from RATE_LIMIT_CONFIG"""

    def test_tip_limit(self):
        tick = Tick()
        limiter = EndpointRateLimiter(clock=tick)
        results = [limiter.hit("/api/account/tip", "u1")[0] for _ in range(11)]
        assert results == [False] * 10 + [True]

    def test_window_slides(self):
        tick = Tick()
        limiter = EndpointRateLimiter(clock=tick)
        for _ in range(10):
            limiter.hit("/api/account/tip", "u1")
        tick.t += 60
        blocked, count, limit = limiter.hit("/api/account/tip", "u1")
        assert (blocked, count, limit) == (False, 1, 10)

    def test_users_counted_separately(self):
        limiter = EndpointRateLimiter(clock=Tick())
        for _ in range(10):
            limiter.hit("/api/account/tip", "u1")
        assert limiter.hit("/api/account/tip", "u2")[0] is False

    def test_idle_keys_are_dropped(self):
        tick = Tick()
        limiter = EndpointRateLimiter(clock=tick)
        for user in ("u1", "u2", "u3"):
            limiter.hit("/api/account/tip", user)
        assert limiter.tracked_keys() == 3
        tick.t += 61
        limiter.hit("/api/account/tip", "u4")
        assert limiter.tracked_keys() == 1

    def test_disabled_path(self):
        limiter = EndpointRateLimiter(clock=Tick())
        assert all(not limiter.hit("/api/admin/rounds/x/retry", "u1")[0] for _ in range(2000))


class TestPathConfig:
    def test_exact_beats_prefix(self):
        assert get_rate_limit_for_path("/api/casino/client-seed") == (10, True)

    def test_longest_prefix(self):
        assert get_rate_limit_for_path("/api/account/rewards/3/claim") == (20, True)
        assert get_rate_limit_for_path("/api/casino/roulette/bet") == (120, True)

    def test_unknown_path(self):
        assert get_rate_limit_for_path("/api/unknown") == (60, False)

    def test_bet_paths(self):
        assert BET_PATH_RE.match("/api/casino/roulette/bet")
        assert BET_PATH_RE.match("/api/casino/coinflip/flip")
        assert BET_PATH_RE.match("/api/casino/rpc")
        assert BET_PATH_RE.match("/api/casino/coinflip/streak/continue")
        assert not BET_PATH_RE.match("/api/casino/coinflip/streak/cash-out")
        assert not BET_PATH_RE.match("/api/casino/client-seed")


class TestSanitizeUsername:
    def test_strips_specials(self):
        assert sanitize_username("<b>bob</b>") == "bbobb"
        assert sanitize_username("ok_name-1") == "ok_name-1"
        assert sanitize_username("") == ""
        assert len(sanitize_username("a" * 50)) == 30


class TestExploitFlags:
    """Flags land in security_flags and show in the admin summary"""

    async def test_negative_balance_flagged(self, db):
        await db.accounts.insert_one({"id": "acc-1", "username": "neg", "balance_cents": -5})
        assert await check_negative_balance(db, "acc-1", "neg") is True
        summary = await get_security_summary(db)
        assert summary["total_flags"] == 1
        assert summary["by_type"] == {"exploit_negative_balance": 1}
        assert summary["top_offenders"][0]["username"] == "neg"

    async def test_positive_balance_not_flagged(self, db):
        await db.accounts.insert_one({"id": "acc-2", "username": "pos", "balance_cents": 5})
        assert await check_negative_balance(db, "acc-2", "pos") is False
        assert await db.security_flags.count_documents({}) == 0

    async def test_impossible_gain(self, db):
        assert await check_impossible_gain(db, "acc-3", "lucky", 2_000_000_000, "roulette") is True
        assert await check_impossible_gain(db, "acc-3", "lucky", 100, "roulette") is False

    async def test_clear_old_flags(self, db):
        await db.security_flags.insert_one({"id": "old", "flag_type": "x", "created_at": "2000-01-01T00:00:00+00:00"})
        assert await clear_old_security_flags(db, days=30) == 1
