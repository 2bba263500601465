"""
Casino facade: one object wiring the ledger, seed vault, round manager,
settlement engine and read models together.

server.py builds a single Casino on the Motor database; request handlers
and the background round loop share it. The TTL cache here is advisory:
every round transition and bet placement invalidates the keys it touches.
"""
import logging
from typing import Any, List, Optional

from accounts import AccountService
from betting import BetPlacer, public_bet, validate_stake
from cache import TTLCache
from config import (
    COINFLIP,
    QUERY_CACHE_MAX_ENTRIES,
    QUERY_CACHE_TTL_SEC,
    RECENT_RESULTS_LIMIT,
    RESOLVED,
    ROUND_GAMES,
    WON,
)
from errors import CasinoError, NotFound, RoundNotReady
from fairness import RandomnessSource, verify_outcome
from feed import ChangeFeed
from games import ensure_game, parse_selection
from ledger import Ledger, utcnow
from money import from_cents
from rounds import RoundManager
from seeds import SeedVault, public_seed_view
from settlement import SettlementEngine
from streaks import CoinflipStreaks

logger = logging.getLogger(__name__)


def public_round(doc: dict) -> dict:
    """Round as shown to players: the draw stays internal until the round is resolved."""
    resolved = doc["status"] == RESOLVED
    return {
        "id": doc["id"],
        "game_type": doc["game_type"],
        "round_number": doc["round_number"],
        "status": doc["status"],
        "betting_starts_at": doc.get("betting_starts_at"),
        "betting_ends_at": doc.get("betting_ends_at"),
        "locked_at": doc.get("locked_at"),
        "server_seed_hash": doc.get("server_seed_hash"),
        "nonce": doc.get("nonce"),
        "outcome": doc.get("outcome") if resolved else None,
        "summary": doc.get("summary") if resolved else None,
        "stuck": bool(doc.get("stuck")),
        "created_at": doc.get("created_at"),
        "resolved_at": doc.get("resolved_at"),
    }


class Casino:
    def __init__(self, db, clock=utcnow, randomness: Optional[RandomnessSource] = None,
                 cache: Optional[TTLCache] = None, settle_wait_seconds: Optional[float] = None):
        self.db = db
        self.cache = cache or TTLCache(QUERY_CACHE_TTL_SEC, QUERY_CACHE_MAX_ENTRIES)
        self.ledger = Ledger(db)
        self.feed = ChangeFeed(db, clock)
        self.seeds = SeedVault(db, clock)
        engine_kwargs = {"wait_seconds": settle_wait_seconds} if settle_wait_seconds is not None else {}
        self.settlement = SettlementEngine(self.ledger, self.feed, clock, self._round_changed, **engine_kwargs)
        self.rounds = RoundManager(self.ledger, self.seeds, self.settlement, randomness, clock, self._round_changed)
        self.bets = BetPlacer(self.ledger, self.feed, self.settlement, clock)
        self.accounts = AccountService(self.ledger, self.feed, clock)
        self.streaks = CoinflipStreaks(self.ledger, self.feed, self.flip, self.accounts.get_balance, clock)
        self._clock = clock

    def _round_changed(self, round_doc: dict) -> None:
        game_type = round_doc.get("game_type")
        self.cache.invalidate(f"round:{game_type}")
        self.cache.invalidate(f"recent:{game_type}")
        self.cache.invalidate(f"bets:{round_doc.get('id')}")

    # ----- Rounds -----
    async def get_current_round(self, game_type: str) -> dict:
        game_type = ensure_game(game_type)
        return await self.cache.get_or_load(
            f"round:{game_type}",
            lambda: self._load_current_round(game_type),
        )

    async def _load_current_round(self, game_type: str) -> dict:
        return public_round(await self.rounds.get_current_round(game_type))

    async def get_round(self, round_id: str) -> dict:
        doc = await self.ledger.get_round(round_id)
        if not doc:
            raise NotFound("Round not found")
        return public_round(doc)

    async def lock_round(self, round_id: str) -> dict:
        return public_round(await self.rounds.lock_round(round_id))

    async def resolve_round(self, round_id: str) -> dict:
        return await self.rounds.resolve_round(round_id)

    async def settle(self, round_id: str, outcome: Optional[dict] = None) -> dict:
        return await self.settlement.settle(round_id, outcome)

    async def tick(self, game_type: str) -> dict:
        return public_round(await self.rounds.tick(game_type))

    async def run_round_loop(self, **kwargs):
        await self.rounds.run_round_loop(**kwargs)

    async def retry_round(self, round_id: str) -> dict:
        return public_round(await self.rounds.retry_round(round_id))

    # ----- Bets -----
    async def place_bet(self, account_id: str, round_id: str, selection: Any, stake: Any) -> dict:
        bet = await self.bets.place_bet(account_id, round_id, selection, stake)
        self.cache.invalidate(f"bets:{round_id}")
        return public_bet(bet)

    async def get_round_bets(self, round_id: str) -> List[dict]:
        return await self.cache.get_or_load(f"bets:{round_id}", lambda: self._load_round_bets(round_id))

    async def _load_round_bets(self, round_id: str) -> List[dict]:
        return [public_bet(b) for b in await self.ledger.round_bets(round_id)]

    async def get_account_bets(self, account_id: str, limit: int = 50) -> List[dict]:
        return [public_bet(b) for b in await self.bets.account_bets(account_id, limit)]

    async def get_recent_results(self, game_type: str, limit: int = RECENT_RESULTS_LIMIT) -> List[dict]:
        game_type = ensure_game(game_type)
        if game_type not in ROUND_GAMES:
            raise NotFound(f"{game_type} has no shared rounds")
        limit = max(1, min(int(limit), RECENT_RESULTS_LIMIT))
        rows = await self.cache.get_or_load(
            f"recent:{game_type}",
            lambda: self.ledger.recent_resolved_rounds(game_type, RECENT_RESULTS_LIMIT),
        )
        return (rows or [])[:limit]

    # ----- Coinflip -----
    async def flip(self, account_id: str, side: Any, stake: Any) -> dict:
        """Instant coinflip: open a private round, bet, lock, draw and settle it in one call."""
        parse_selection(COINFLIP, side)
        validate_stake(stake)
        client_seed = await self.seeds.get_client_seed(account_id)
        round_doc = await self.rounds.open_instant_round(COINFLIP, account_id, client_seed)
        try:
            bet = await self.bets.place_bet(account_id, round_doc["id"], side, stake)
        except CasinoError:
            # Close the empty round so it does not linger open
            await self.rounds.lock_round(round_doc["id"])
            await self.rounds.resolve_and_settle(round_doc["id"])
            raise
        await self.rounds.lock_round(round_doc["id"])
        outcome = await self.rounds.resolve_round(round_doc["id"])
        summary = await self.settlement.settle(round_doc["id"])
        settled = await self.ledger.get_bet(bet["id"])
        balance = await self.accounts.get_balance(account_id)
        return {
            "round": public_round(await self.ledger.get_round(round_doc["id"])),
            "bet": public_bet(settled),
            "outcome": outcome,
            "summary": summary,
            "won": settled["status"] == WON,
            "new_balance": balance,
        }

    async def get_streak(self, account_id: str) -> Optional[dict]:
        return await self.streaks.current(account_id)

    async def streak_history(self, account_id: str, limit: int = 20) -> List[dict]:
        return await self.streaks.history(account_id, limit)

    async def start_streak(self, account_id: str, side: Any, stake: Any) -> dict:
        return await self.streaks.start(account_id, side, stake)

    async def continue_streak(self, account_id: str, side: Any) -> dict:
        return await self.streaks.continue_streak(account_id, side)

    async def cash_out_streak(self, account_id: str) -> dict:
        return await self.streaks.cash_out(account_id)

    # ----- Provably fair -----
    async def get_daily_seed(self) -> dict:
        return await self.seeds.today_public(self._clock())

    async def reveal_seeds(self) -> int:
        return await self.seeds.reveal_expired(self._clock())

    async def get_client_seed(self, account_id: str) -> str:
        return await self.seeds.get_client_seed(account_id)

    async def set_client_seed(self, account_id: str, client_seed: str) -> dict:
        has_bet = await self.bets.has_unresolved_bet(account_id)
        doc = await self.seeds.set_client_seed(account_id, client_seed, has_bet, self._clock())
        return {"client_seed": doc["client_seed"], "created_at": doc["created_at"]}

    async def verify_round(self, round_id: str) -> dict:
        doc = await self.ledger.get_round(round_id)
        if not doc:
            raise NotFound("Round not found")
        if doc["status"] != RESOLVED:
            raise RoundNotReady("Round is not resolved yet")
        seed = await self.seeds.seed_for_verification(doc["daily_seed_id"], self._clock())
        result = {
            "round_id": doc["id"],
            "game_type": doc["game_type"],
            "round_number": doc["round_number"],
            "nonce": doc["nonce"],
            "outcome": doc["outcome"],
            "seed": public_seed_view(seed),
        }
        if not seed.get("is_revealed"):
            result["status"] = "hidden"
            return result
        public_seed = doc.get("client_seed") if doc["game_type"] == COINFLIP else seed["lotto"]
        valid = verify_outcome(doc["game_type"], seed["server_seed"], public_seed, doc["nonce"], doc["outcome"])
        result["public_seed"] = public_seed
        result["draw"] = doc.get("draw")
        result["status"] = "valid" if valid else "invalid"
        if not valid:
            logger.error("Round %s failed fairness verification", round_id)
        return result

    # ----- Accounts -----
    async def get_balance(self, account_id: str):
        return await self.accounts.get_balance(account_id)

    async def get_level_stats(self, account_id: str) -> dict:
        return await self.accounts.get_level_stats(account_id)

    async def get_game_stats(self, account_id: str) -> dict:
        return await self.accounts.get_game_stats(account_id)

    async def list_level_rewards(self, account_id: str) -> List[dict]:
        return await self.accounts.list_level_rewards(account_id)

    async def claim_level_reward(self, account_id: str, level: int) -> dict:
        return await self.accounts.claim_level_reward(account_id, level)

    async def tip(self, sender_id: str, recipient_username: str, amount: Any, message: str = "") -> dict:
        return await self.accounts.tip(sender_id, recipient_username, amount, message)

    async def feed_since(self, account_id: str, since: Optional[str] = None, limit: int = 100) -> List[dict]:
        events = await self.feed.since(account_id, since, limit)
        for e in events:
            e["delta"] = from_cents(e.get("delta_cents") or 0)
            if e.get("new_balance_cents") is not None:
                e["new_balance"] = from_cents(e["new_balance_cents"])
        return events

    async def history(self, account_id: str, limit: int = 50) -> List[dict]:
        return await self.ledger.account_history(account_id, limit)
