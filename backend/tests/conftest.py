"""
Shared fixtures: an in-memory Mongo (mongomock-motor), a controllable clock
and a Casino wired to both. Env vars are set before server/config import.
"""
import os

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "casino_test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ["MIN_BET_INTERVAL_SECONDS"] = "0"
os.environ["ROUND_LOOP_ENABLED"] = "0"
os.environ["ADMIN_EMAILS"] = "admin@example.com"

from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from casino import Casino
from config import COINFLIP, ROULETTE
from ensure_indexes import ensure_all_indexes
from fairness import RandomnessSource


class FakeClock:
    """Callable clock; tests move time with advance()/set()."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


class FixedRandomness(RandomnessSource):
    """Returns a preset outcome instead of drawing one."""

    def __init__(self, outcome: dict):
        self.outcome = outcome
        self.calls = 0

    def resolve(self, round_context: dict) -> dict:
        self.calls += 1
        return dict(self.outcome, digest="fixed")


class SequenceRandomness(RandomnessSource):
    """Returns the preset outcomes in order, one per draw."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)

    def resolve(self, round_context: dict) -> dict:
        return dict(self.outcomes.pop(0), digest="fixed")


class PerGameRandomness(RandomnessSource):
    """One preset outcome per game type."""

    def __init__(self, outcomes: dict):
        self.outcomes = outcomes

    def resolve(self, round_context: dict) -> dict:
        return dict(self.outcomes[round_context["game_type"]], digest="fixed")


class BrokenRandomness(RandomnessSource):
    def resolve(self, round_context: dict) -> dict:
        from errors import RandomnessUnavailable
        raise RandomnessUnavailable("entropy source offline")


HEADS = {"game_type": COINFLIP, "side": "heads"}
TAILS = {"game_type": COINFLIP, "side": "tails"}
RED_3 = {"game_type": ROULETTE, "index": 12, "slot": 3, "color": "red", "multiplier": 2}
BLACK_4 = {"game_type": ROULETTE, "index": 1, "slot": 4, "color": "black", "multiplier": 2}


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["casino_test"]
    await ensure_all_indexes(database)
    return database


@pytest.fixture
def make_casino(db, clock):
    """Factory so a test can choose the randomness source."""
    def _make(randomness=None, **kwargs):
        kwargs.setdefault("settle_wait_seconds", 2.0)
        return Casino(db, clock=clock, randomness=randomness, **kwargs)
    return _make


@pytest.fixture
def casino(make_casino):
    return make_casino()


async def make_account(casino, username: str, balance_cents: int = 0) -> dict:
    account = await casino.ledger.create_account(f"{username.lower()}@example.com", username, "x", balance_cents)
    return account


async def balance_cents(casino, account_id: str) -> int:
    account = await casino.ledger.get_account(account_id, {"balance_cents": 1})
    return account["balance_cents"]


async def open_roulette_round(casino) -> dict:
    return await casino.rounds.get_current_round(ROULETTE)


async def lock_and_resolve(casino, clock, round_id: str) -> dict:
    clock.advance(1)
    await casino.rounds.lock_round(round_id)
    return await casino.rounds.resolve_round(round_id)
