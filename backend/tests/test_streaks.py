"""
Coinflip streak tests
Tests for: riding value after wins, cash out, losses, one open streak per account,
failed continues, concurrent and stale flips
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from config import COINFLIP, STREAK_ACTIVE, STREAK_CASHED_OUT, STREAK_FLIPPING, STREAK_LOST
from errors import InsufficientBalance, NotFound, ValidationError
from feed import STREAK_CASH_OUT
from ledger import iso

from conftest import HEADS, TAILS, FixedRandomness, SequenceRandomness, balance_cents, make_account


class TestStreakRiding:
    """Each win re-stakes the whole riding value at 1.98x"""

    async def test_first_win_can_continue(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "alice", 10_000)

        result = await casino.start_streak(acc["id"], "heads", "10")

        assert result["won"] is True
        assert result["action"] == "continue"
        assert result["streak"]["wins"] == 1
        assert result["streak"]["riding"] == Decimal("19.80")
        assert result["streak"]["multiplier"] == Decimal("1.9800")
        assert result["streak"]["next_multiplier"] == Decimal("3.9204")
        assert await balance_cents(casino, acc["id"]) == 10_980

    async def test_two_wins_then_cash_out(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "bob", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")

        result = await casino.continue_streak(acc["id"], "heads")
        assert result["streak"]["wins"] == 2
        assert result["streak"]["riding"] == Decimal("39.20")
        assert result["bet"]["stake"] == Decimal("19.80")
        assert await balance_cents(casino, acc["id"]) == 12_920

        cashed = await casino.cash_out_streak(acc["id"])
        assert cashed["action"] == "cash_out"
        assert cashed["payout"] == Decimal("39.20")
        assert cashed["profit"] == Decimal("29.20")
        assert cashed["streak"]["status"] == STREAK_CASHED_OUT
        assert cashed["new_balance"] == Decimal("129.20")
        assert await balance_cents(casino, acc["id"]) == 12_920
        assert await casino.get_streak(acc["id"]) is None

    async def test_each_flip_is_a_settled_bet(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "carol", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")
        await casino.continue_streak(acc["id"], "heads")

        history = await casino.history(acc["id"])
        assert len(history) == 2
        assert {h["game_type"] for h in history} == {COINFLIP}
        stats = await casino.get_game_stats(acc["id"])
        assert stats["coinflip"]["wins"] == 2
        assert stats["coinflip"]["best_streak"] == 2

    async def test_cash_out_emits_one_event(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "dave", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")
        await casino.cash_out_streak(acc["id"])

        events = [e for e in await casino.feed_since(acc["id"]) if e["kind"] == STREAK_CASH_OUT]
        assert len(events) == 1
        assert events[0]["data"]["payout_cents"] == 1_980
        assert events[0]["delta"] == Decimal("0.00")


class TestStreakLoss:
    """A lost flip ends the streak with nothing riding"""

    async def test_loss_on_continue_ends_streak(self, make_casino):
        casino = make_casino(SequenceRandomness([HEADS, TAILS]))
        acc = await make_account(casino, "erin", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")

        result = await casino.continue_streak(acc["id"], "heads")

        assert result["won"] is False
        assert result["action"] == "lost"
        assert result["streak"]["status"] == STREAK_LOST
        assert result["streak"]["riding"] == Decimal("0.00")
        assert await balance_cents(casino, acc["id"]) == 9_000
        assert await casino.get_streak(acc["id"]) is None
        with pytest.raises(NotFound):
            await casino.continue_streak(acc["id"], "heads")

    async def test_loss_on_first_flip(self, make_casino):
        casino = make_casino(FixedRandomness(TAILS))
        acc = await make_account(casino, "finn", 10_000)

        result = await casino.start_streak(acc["id"], "heads", "10")

        assert result["action"] == "lost"
        assert result["streak"]["wins"] == 0
        assert await balance_cents(casino, acc["id"]) == 9_000
        assert [s["status"] for s in await casino.streak_history(acc["id"])] == [STREAK_LOST]


class TestStreakRules:
    """One open streak per account; failed continues keep the streak"""

    async def test_second_start_rejected(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "gina", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")
        with pytest.raises(ValidationError):
            await casino.start_streak(acc["id"], "tails", "5")
        assert await balance_cents(casino, acc["id"]) == 10_980

    async def test_cash_out_without_streak(self, casino):
        acc = await make_account(casino, "hank", 1_000)
        with pytest.raises(NotFound):
            await casino.cash_out_streak(acc["id"])

    async def test_continue_needs_the_riding_value(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "ivan", 1_000)
        await casino.start_streak(acc["id"], "heads", "10")
        await casino.ledger.debit_if_sufficient(acc["id"], 1_980)

        with pytest.raises(InsufficientBalance):
            await casino.continue_streak(acc["id"], "heads")

        streak = await casino.get_streak(acc["id"])
        assert streak["status"] == STREAK_ACTIVE
        assert streak["wins"] == 1

    async def test_invalid_side_keeps_streak(self, make_casino):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "jane", 10_000)
        await casino.start_streak(acc["id"], "heads", "10")
        with pytest.raises(ValidationError):
            await casino.continue_streak(acc["id"], "edge")
        assert (await casino.get_streak(acc["id"]))["status"] == STREAK_ACTIVE


class TestStreakFlipping:
    """A streak in the middle of a flip cannot be flipped or cashed out again"""

    async def test_fresh_flip_blocks_cash_out(self, make_casino, clock, db):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "kyle", 10_000)
        started = await casino.start_streak(acc["id"], "heads", "10")
        await db.coinflip_streaks.update_one(
            {"id": started["streak"]["id"]},
            {"$set": {"status": STREAK_FLIPPING, "updated_at": iso(clock())}},
        )
        with pytest.raises(ValidationError):
            await casino.cash_out_streak(acc["id"])
        with pytest.raises(ValidationError):
            await casino.continue_streak(acc["id"], "heads")

    async def test_stale_flip_can_be_cashed_out(self, make_casino, clock, db):
        casino = make_casino(FixedRandomness(HEADS))
        acc = await make_account(casino, "lena", 10_000)
        started = await casino.start_streak(acc["id"], "heads", "10")
        await db.coinflip_streaks.update_one(
            {"id": started["streak"]["id"]},
            {"$set": {"status": STREAK_FLIPPING, "updated_at": iso(clock())}},
        )
        clock.set(clock() + timedelta(seconds=120))

        cashed = await casino.cash_out_streak(acc["id"])
        assert cashed["payout"] == Decimal("19.80")
