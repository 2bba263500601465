"""
Bet placement tests
Tests for: validation, atomic stake debit, betting window, per-round limits,
coinflip rounds and client seeds
"""
from decimal import Decimal

import pytest

from config import COINFLIP, PENDING, RESOLVED, VOID
from errors import (
    InsufficientBalance,
    InvalidSelection,
    InvalidStake,
    NotFound,
    RateLimited,
    RoundNotOpen,
    ValidationError,
)

from conftest import RED_3, FixedRandomness, balance_cents, lock_and_resolve, make_account, open_roulette_round


class TestPlaceBet:
    """Validation happens before any money moves"""

    async def test_bet_debits_stake(self, casino):
        acc = await make_account(casino, "alice", 5_000)
        rnd = await open_roulette_round(casino)
        bet = await casino.place_bet(acc["id"], rnd["id"], "green", Decimal("12.34"))

        assert bet["status"] == PENDING
        assert bet["stake"] == Decimal("12.34")
        assert bet["potential_payout"] == Decimal("172.76")
        assert bet["selection"] == {"color": "green"}
        assert await balance_cents(casino, acc["id"]) == 5_000 - 1_234

    async def test_insufficient_balance(self, casino):
        acc = await make_account(casino, "bob", 500)
        rnd = await open_roulette_round(casino)
        with pytest.raises(InsufficientBalance):
            await casino.place_bet(acc["id"], rnd["id"], "red", "10")
        assert await balance_cents(casino, acc["id"]) == 500
        assert await casino.ledger.round_bets(rnd["id"]) == []

    async def test_unknown_account(self, casino):
        rnd = await open_roulette_round(casino)
        with pytest.raises(NotFound):
            await casino.place_bet("ghost", rnd["id"], "red", "1")

    async def test_unknown_round(self, casino):
        acc = await make_account(casino, "carl", 500)
        with pytest.raises(NotFound):
            await casino.place_bet(acc["id"], "no-round", "red", "1")

    async def test_invalid_selection(self, casino):
        acc = await make_account(casino, "dana", 500)
        rnd = await open_roulette_round(casino)
        with pytest.raises(InvalidSelection):
            await casino.place_bet(acc["id"], rnd["id"], "purple", "1")

    @pytest.mark.parametrize("stake", ["0", "-1", "1.001", "abc", "1000001", Decimal("1e30")])
    async def test_invalid_stake(self, casino, stake):
        acc = await make_account(casino, "eve", 500)
        rnd = await open_roulette_round(casino)
        with pytest.raises(InvalidStake):
            await casino.place_bet(acc["id"], rnd["id"], "red", stake)
        assert await balance_cents(casino, acc["id"]) == 500

    async def test_per_round_maximum(self, casino):
        acc = await make_account(casino, "fred", 20_000_000)
        rnd = await open_roulette_round(casino)
        await casino.place_bet(acc["id"], rnd["id"], "red", "60000")
        with pytest.raises(InvalidStake):
            await casino.place_bet(acc["id"], rnd["id"], "black", "60000")
        assert await balance_cents(casino, acc["id"]) == 14_000_000

    async def test_locked_round_rejects(self, casino, clock):
        acc = await make_account(casino, "gail", 5_000)
        rnd = await open_roulette_round(casino)
        clock.advance(1)
        await casino.lock_round(rnd["id"])
        with pytest.raises(RoundNotOpen):
            await casino.place_bet(acc["id"], rnd["id"], "red", "1")

    async def test_after_betting_window(self, casino, clock):
        acc = await make_account(casino, "hugo", 5_000)
        rnd = await open_roulette_round(casino)
        clock.advance(25)
        with pytest.raises(RoundNotOpen):
            await casino.place_bet(acc["id"], rnd["id"], "red", "1")

    async def test_before_betting_window(self, make_casino, clock):
        casino = make_casino(FixedRandomness(RED_3))
        acc = await make_account(casino, "iris", 5_000)
        first = await open_roulette_round(casino)
        await lock_and_resolve(casino, clock, first["id"])
        await casino.settle(first["id"])

        second = await open_roulette_round(casino)
        with pytest.raises(RoundNotOpen):
            await casino.place_bet(acc["id"], second["id"], "red", "1")
        clock.advance(4)
        await casino.place_bet(acc["id"], second["id"], "red", "1")

    async def test_bet_landing_on_resolved_round_is_refunded(self, make_casino, clock, monkeypatch):
        casino = make_casino(FixedRandomness(RED_3))
        acc = await make_account(casino, "jack", 5_000)
        rnd = await open_roulette_round(casino)
        await lock_and_resolve(casino, clock, rnd["id"])
        await casino.settle(rnd["id"])

        # The round looked open when validated but settled before the bet was written
        monkeypatch.setattr(casino.bets, "_check_open", lambda round_doc: None)
        with pytest.raises(RoundNotOpen):
            await casino.place_bet(acc["id"], rnd["id"], "red", "10")

        bets = await casino.ledger.round_bets(rnd["id"])
        assert [b["status"] for b in bets] == [VOID]
        assert await balance_cents(casino, acc["id"]) == 5_000

    async def test_insert_failure_refunds(self, casino, monkeypatch):
        acc = await make_account(casino, "kate", 5_000)
        rnd = await open_roulette_round(casino)

        async def broken_insert(doc):
            raise RuntimeError("write failed")

        monkeypatch.setattr(casino.ledger, "insert_bet", broken_insert)
        with pytest.raises(RuntimeError):
            await casino.place_bet(acc["id"], rnd["id"], "red", "10")
        assert await balance_cents(casino, acc["id"]) == 5_000

    async def test_round_bets_listing(self, casino):
        acc = await make_account(casino, "liam", 5_000)
        rnd = await open_roulette_round(casino)
        await casino.place_bet(acc["id"], rnd["id"], "red", "1")
        bets = await casino.get_round_bets(rnd["id"])
        assert len(bets) == 1
        assert bets[0]["username"] == "liam"
        assert len(await casino.get_account_bets(acc["id"])) == 1


class TestCoinflip:
    """Single-player instant rounds"""

    async def test_flip_settles_immediately(self, casino):
        acc = await make_account(casino, "mona", 10_000)
        result = await casino.flip(acc["id"], "heads", "10")

        assert result["round"]["status"] == RESOLVED
        assert result["won"] == (result["outcome"]["side"] == "heads")
        expected = 10_000 - 1_000 + (1_980 if result["won"] else 0)
        assert await balance_cents(casino, acc["id"]) == expected
        assert result["new_balance"] == Decimal(expected) / 100
        assert result["summary"]["bets_processed"] == 1

    async def test_flip_uses_client_seed(self, casino):
        acc = await make_account(casino, "nick", 10_000)
        await casino.set_client_seed(acc["id"], "my-lucky-seed")
        result = await casino.flip(acc["id"], "tails", "1")
        stored = await casino.ledger.get_round(result["round"]["id"])
        assert stored["client_seed"] == "my-lucky-seed"
        assert stored["game_type"] == COINFLIP

    async def test_flip_insufficient_closes_round(self, casino, db):
        acc = await make_account(casino, "olga", 100)
        with pytest.raises(InsufficientBalance):
            await casino.flip(acc["id"], "heads", "10")
        rounds = await db.rounds.find({"game_type": COINFLIP}, {"_id": 0}).to_list(None)
        assert [r["status"] for r in rounds] == [RESOLVED]

    async def test_flip_validates_before_opening_round(self, casino, db):
        acc = await make_account(casino, "paul", 10_000)
        with pytest.raises(InvalidSelection):
            await casino.flip(acc["id"], "edge", "10")
        assert await db.rounds.count_documents({"game_type": COINFLIP}) == 0

    async def test_other_player_cannot_join_flip(self, casino):
        owner = await make_account(casino, "quinn", 10_000)
        other = await make_account(casino, "rita", 10_000)
        rnd = await casino.rounds.open_instant_round(COINFLIP, owner["id"], "seed-value")
        with pytest.raises(RoundNotOpen):
            await casino.place_bet(other["id"], rnd["id"], "heads", "1")


class TestClientSeed:
    """Client seed rules"""

    async def test_default(self, casino):
        acc = await make_account(casino, "sam", 0)
        assert await casino.get_client_seed(acc["id"]) == "default_client_seed"

    @pytest.mark.parametrize("seed", ["short", "has spaces in it", "x" * 65, "semi;colon!"])
    async def test_rejects_bad_seeds(self, casino, seed):
        acc = await make_account(casino, "tina", 0)
        with pytest.raises(InvalidSelection):
            await casino.set_client_seed(acc["id"], seed)

    async def test_change_rate_limited(self, casino, clock):
        acc = await make_account(casino, "ugo", 0)
        await casino.set_client_seed(acc["id"], "first-seed")
        with pytest.raises(RateLimited):
            await casino.set_client_seed(acc["id"], "second-seed")
        clock.advance(61)
        await casino.set_client_seed(acc["id"], "second-seed")
        assert await casino.get_client_seed(acc["id"]) == "second-seed"

    async def test_blocked_with_pending_bet(self, casino):
        acc = await make_account(casino, "vera", 5_000)
        rnd = await open_roulette_round(casino)
        await casino.place_bet(acc["id"], rnd["id"], "red", "1")
        with pytest.raises(ValidationError):
            await casino.set_client_seed(acc["id"], "fresh-seed-1")
