# Round lifecycle: open -> locked -> resolving -> resolved, plus the background loop driving it.
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import (
    BETTING_DURATION,
    CLAIM_TTL_SECONDS,
    COINFLIP,
    INTER_ROUND_DELAY,
    LOCKED,
    MAX_RESOLVE_ATTEMPTS,
    OPEN,
    RESOLVED,
    RESOLVING,
    ROUND_GAMES,
    ROUND_LOOP_INTERVAL,
)
from errors import (
    ConsistencyViolation,
    NotFound,
    RandomnessUnavailable,
    RoundNotReady,
    SettlementIncomplete,
    SettlementInProgress,
)
from fairness import RandomnessSource, public_outcome
from games import ensure_game
from ledger import Ledger, iso, new_id, parse_iso, utcnow
from seeds import SeedVault
from settlement import SettlementEngine

logger = logging.getLogger(__name__)

_CREATE_ATTEMPTS = 5
SEED_REVEAL_INTERVAL = 60


class RoundManager:
    def __init__(self, ledger: Ledger, seeds: SeedVault, settlement: SettlementEngine,
                 randomness: Optional[RandomnessSource] = None, clock=utcnow,
                 on_round_change: Optional[Callable[[dict], None]] = None,
                 max_resolve_attempts: int = MAX_RESOLVE_ATTEMPTS):
        self.ledger = ledger
        self.seeds = seeds
        self.settlement = settlement
        self.randomness = randomness or RandomnessSource()
        self._clock = clock
        self._on_round_change = on_round_change
        self.max_resolve_attempts = max_resolve_attempts

    def _round_changed(self, round_doc: dict) -> None:
        if self._on_round_change and round_doc:
            self._on_round_change(round_doc)

    # ----- Creation -----
    async def get_current_round(self, game_type: str) -> dict:
        """Newest unresolved round of a round-based game, creating the next one when there is none.

        A stuck round is returned as is: it blocks creation until an admin retries it.
        """
        game_type = ensure_game(game_type)
        if game_type not in ROUND_GAMES:
            raise NotFound(f"{game_type} has no shared rounds")
        current = await self.ledger.current_unresolved_round(game_type)
        if current:
            return current
        return await self._create_round(game_type)

    async def open_instant_round(self, game_type: str, account_id: str, client_seed: str) -> dict:
        """Single-player round (coinflip) bound to the player's client seed."""
        return await self._create_round(game_type, account_id=account_id, client_seed=client_seed)

    async def _create_round(self, game_type: str, account_id: Optional[str] = None,
                            client_seed: Optional[str] = None) -> dict:
        for _ in range(_CREATE_ATTEMPTS):
            last = await self.ledger.latest_round(game_type)
            doc = await self._new_round_doc(game_type, last, account_id, client_seed)
            if await self.ledger.insert_round(doc):
                logger.info("Opened %s round #%s (%s)", game_type, doc["round_number"], doc["id"])
                self._round_changed(doc)
                return doc
            if game_type in ROUND_GAMES:
                # Lost the race: the winner's round is the current one
                current = await self.ledger.current_unresolved_round(game_type)
                if current:
                    return current
        raise SettlementInProgress(f"Could not open a new {game_type} round")

    async def _new_round_doc(self, game_type: str, last: Optional[dict], account_id: Optional[str],
                             client_seed: Optional[str]) -> dict:
        now = self._clock()
        seed = await self.seeds.get_or_create_daily_seed(now)
        starts = now
        if last and last.get("resolved_at") and INTER_ROUND_DELAY.get(game_type):
            starts = max(now, parse_iso(last["resolved_at"]) + timedelta(seconds=INTER_ROUND_DELAY[game_type]))
        duration = BETTING_DURATION.get(game_type) or 0
        round_number = (last["round_number"] + 1) if last else 1
        return {
            "id": new_id(),
            "game_type": game_type,
            "round_number": round_number,
            "status": OPEN,
            "account_id": account_id,
            "betting_starts_at": iso(starts),
            "betting_ends_at": iso(starts + timedelta(seconds=duration)) if duration else None,
            "locked_at": None,
            "daily_seed_id": seed["id"],
            "server_seed_hash": seed["server_seed_hash"],
            "nonce": round_number,
            "client_seed": client_seed,
            "draw": None,
            "outcome": None,
            "summary": None,
            "claim_token": None,
            "claimed_at": None,
            "resolve_attempts": 0,
            "stuck": False,
            "last_error": None,
            "created_at": iso(now),
            "resolved_at": None,
        }

    # ----- Transitions -----
    async def lock_round(self, round_id: str) -> dict:
        """open -> locked. Locking an already locked (or later) round returns it unchanged."""
        doc = await self.ledger.transition_round(round_id, [OPEN], {"status": LOCKED, "locked_at": iso(self._clock())})
        if doc:
            logger.info("Locked %s round #%s", doc["game_type"], doc["round_number"])
            self._round_changed(doc)
            return doc
        doc = await self.ledger.get_round(round_id)
        if not doc:
            raise NotFound("Round not found", round_id=round_id)
        return doc

    async def resolve_round(self, round_id: str) -> dict:
        """Fix the round's outcome once and return it. Repeated calls return the same outcome."""
        doc = await self.ledger.get_round(round_id)
        if not doc:
            raise NotFound("Round not found", round_id=round_id)
        if doc["status"] == RESOLVED:
            return doc["outcome"]
        if doc.get("draw"):
            return public_outcome(doc["draw"])
        if doc["status"] not in (LOCKED, RESOLVING):
            raise RoundNotReady("Round is still open for bets", round_id=round_id)

        draw = self.randomness.resolve(await self._round_context(doc))
        if not await self.ledger.fix_draw(round_id, draw, [LOCKED, RESOLVING]):
            logger.info("Round %s already had a draw; using the stored one", round_id)
        stored = await self.ledger.get_round(round_id)
        if stored["status"] == RESOLVED:
            return stored["outcome"]
        if not stored.get("draw"):
            raise RoundNotReady("Round left the resolvable states", round_id=round_id, status=stored["status"])
        self._round_changed(stored)
        return public_outcome(stored["draw"])

    async def _round_context(self, doc: dict) -> dict:
        seed = await self.seeds.get_seed(doc.get("daily_seed_id"))
        if not seed:
            raise RandomnessUnavailable("Daily seed missing for round", round_id=doc["id"])
        public_seed = doc.get("client_seed") if doc["game_type"] == COINFLIP else seed.get("lotto")
        return {
            "game_type": doc["game_type"],
            "round_id": doc["id"],
            "nonce": doc.get("nonce"),
            "server_seed": seed.get("server_seed"),
            "server_seed_hash": seed.get("server_seed_hash"),
            "public_seed": public_seed,
        }

    async def resolve_and_settle(self, round_id: str) -> dict:
        await self.resolve_round(round_id)
        return await self.settlement.settle(round_id)

    # ----- Driving -----
    async def tick(self, game_type: str, now: Optional[datetime] = None) -> dict:
        """Move the current round of game_type one step forward."""
        doc = await self.get_current_round(game_type)
        if doc.get("stuck"):
            return doc
        now = now or self._clock()

        if doc["status"] == OPEN:
            if not doc.get("betting_ends_at") or now < parse_iso(doc["betting_ends_at"]):
                return doc
            doc = await self.lock_round(doc["id"])

        if doc["status"] == RESOLVING and doc.get("claimed_at"):
            if now - parse_iso(doc["claimed_at"]) < timedelta(seconds=CLAIM_TTL_SECONDS):
                return doc  # another worker is settling it

        if doc["status"] in (LOCKED, RESOLVING):
            try:
                await self.resolve_and_settle(doc["id"])
            except (RandomnessUnavailable, SettlementIncomplete, ConsistencyViolation) as e:
                return await self._record_failure(doc, e)
            except SettlementInProgress:
                logger.info("Round %s is being settled elsewhere", doc["id"])
            doc = await self.ledger.get_round(doc["id"])
        return doc

    async def _record_failure(self, doc: dict, error: Exception) -> dict:
        message = getattr(error, "message", None) or str(error)
        updated = await self.ledger.record_resolve_failure(doc["id"], message, self.max_resolve_attempts)
        attempts = (updated or {}).get("resolve_attempts")
        if updated and updated.get("stuck"):
            logger.error(
                "%s round #%s is stuck after %s resolution attempts: %s",
                doc["game_type"], doc["round_number"], attempts, message,
            )
            self._round_changed(updated)
        else:
            logger.warning("Resolution of round %s failed (attempt %s): %s", doc["id"], attempts, message)
        return updated or doc

    async def retry_round(self, round_id: str) -> dict:
        """Clear the stuck flag so the loop tries to resolve the round again."""
        if not await self.ledger.clear_stuck(round_id):
            raise NotFound("Unresolved round not found", round_id=round_id)
        doc = await self.ledger.get_round(round_id)
        logger.info("Round %s released for retry", round_id)
        self._round_changed(doc)
        return doc

    async def run_round_loop(self, interval: float = ROUND_LOOP_INTERVAL, stop: Optional[asyncio.Event] = None):
        """Background task: tick every round-based game, reveal finished seeds now and then."""
        logger.info("Round loop started (%s)", ", ".join(ROUND_GAMES))
        last_reveal = None
        while stop is None or not stop.is_set():
            for game_type in ROUND_GAMES:
                try:
                    await self.tick(game_type)
                except Exception as e:
                    logger.exception("Round loop error for %s: %s", game_type, e)
            now = self._clock()
            if last_reveal is None or (now - last_reveal).total_seconds() >= SEED_REVEAL_INTERVAL:
                try:
                    await self.seeds.reveal_expired(now)
                except Exception as e:
                    logger.exception("Seed reveal failed: %s", e)
                last_reveal = now
            await asyncio.sleep(interval)
