# Ledger Store access layer: accounts, rounds, bets and history in MongoDB.
#
# Every money/XP mutation is a single-document atomic update ($inc with a
# guard in the filter). Callers never read a balance and write it back.
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import PENDING, RESOLVED, SETTLED_BET_MEMORY, STREAK_OPEN_STATUSES, UNRESOLVED_STATUSES

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Fixed-width ISO timestamp so stored strings compare in time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_id() -> str:
    return str(uuid.uuid4())


class Ledger:
    """Durable record of accounts, rounds, bets and append-only history."""

    def __init__(self, db):
        self.db = db

    async def _find_and_update(self, collection, query: dict, update: dict,
                               projection: Optional[dict] = None) -> Optional[dict]:
        """find_one_and_update returning the updated document, without _id.

        _id stays in the projection so the post-update read goes by _id and not
        by query, which the updated document usually no longer matches.
        """
        proj = {k: v for k, v in (projection or {}).items() if k != "_id"} or None
        doc = await collection.find_one_and_update(query, update, projection=proj,
                                                   return_document=ReturnDocument.AFTER)
        if doc is not None:
            doc.pop("_id", None)
        return doc

    # ----- Accounts -----
    async def create_account(self, email: str, username: str, password_hash: str,
                             starting_balance_cents: int = 0, now: Optional[datetime] = None) -> dict:
        doc = {
            "id": new_id(),
            "email": email,
            "username": username,
            "password_hash": password_hash,
            "balance_cents": int(starting_balance_cents),
            "lifetime_xp_milli": 0,
            "level": 1,
            "stats": {},
            "settled_bets": [],
            "is_admin": False,
            "created_at": iso(now or utcnow()),
        }
        await self.db.accounts.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def get_account(self, account_id: str, projection: Optional[dict] = None) -> Optional[dict]:
        proj = dict(NO_ID, **(projection or {}))
        return await self.db.accounts.find_one({"id": account_id}, proj)

    async def find_account(self, query: dict) -> Optional[dict]:
        return await self.db.accounts.find_one(query, NO_ID)

    async def debit_if_sufficient(self, account_id: str, cents: int) -> Optional[dict]:
        """Atomically subtract cents if the balance covers it. None when it does not (or no account)."""
        return await self._find_and_update(
            self.db.accounts,
            {"id": account_id, "balance_cents": {"$gte": int(cents)}},
            {"$inc": {"balance_cents": -int(cents)}},
            {"id": 1, "balance_cents": 1, "username": 1},
        )

    async def credit(self, account_id: str, cents: int) -> Optional[dict]:
        """Atomically add cents. None when the account does not exist."""
        return await self._find_and_update(
            self.db.accounts,
            {"id": account_id},
            {"$inc": {"balance_cents": int(cents)}},
            {"id": 1, "balance_cents": 1, "username": 1},
        )

    async def apply_bet_settlement(self, account_id: str, bet_id: str, game_type: str, payout_cents: int,
                                   stake_cents: int, profit_cents: int, xp_milli: int, won: bool) -> Tuple[Optional[dict], bool]:
        """Apply one bet's balance, XP and counter effects exactly once.

        Returns (account_after, applied). applied is False when the bet id was
        already recorded on the account (a retried settlement). account_after
        is None when the account does not exist.
        """
        prefix = f"stats.{game_type}"
        inc = {
            "balance_cents": int(payout_cents),
            "lifetime_xp_milli": int(xp_milli),
            f"{prefix}.games_played": 1,
            f"{prefix}.wagered_cents": int(stake_cents),
            f"{prefix}.profit_cents": int(profit_cents),
            f"{prefix}.{'wins' if won else 'losses'}": 1,
        }
        update = {
            "$inc": inc,
            "$push": {"settled_bets": {"$each": [bet_id], "$slice": -SETTLED_BET_MEMORY}},
        }
        if won:
            inc[f"{prefix}.current_streak"] = 1
        else:
            update["$set"] = {f"{prefix}.current_streak": 0}
        after = await self._find_and_update(
            self.db.accounts,
            {"id": account_id, "settled_bets": {"$ne": bet_id}},
            update,
            {"settled_bets": 0, "password_hash": 0},
        )
        if after is not None:
            return after, True
        existing = await self.db.accounts.find_one(
            {"id": account_id, "settled_bets": bet_id},
            {"_id": 0, "settled_bets": 0, "password_hash": 0},
        )
        return existing, False

    async def bet_applied(self, account_id: str, bet_id: str) -> bool:
        """True when the bet's settlement or refund already reached the account."""
        doc = await self.db.accounts.find_one({"id": account_id, "settled_bets": bet_id}, {"_id": 0, "id": 1})
        return doc is not None

    async def set_level_if_current(self, account_id: str, lifetime_xp_milli: int, level: int) -> bool:
        """Store the derived level only if no later XP change has landed since."""
        res = await self.db.accounts.update_one(
            {"id": account_id, "lifetime_xp_milli": int(lifetime_xp_milli)},
            {"$set": {"level": int(level)}},
        )
        return res.modified_count > 0

    async def raise_best_streak(self, account_id: str, game_type: str, streak: int) -> None:
        await self.db.accounts.update_one(
            {"id": account_id},
            {"$max": {f"stats.{game_type}.best_streak": int(streak)}},
        )

    # ----- Rounds -----
    async def insert_round(self, doc: dict) -> bool:
        """Insert a new round. False when another caller already created that round number."""
        try:
            await self.db.rounds.insert_one(doc)
        except DuplicateKeyError:
            return False
        doc.pop("_id", None)
        return True

    async def get_round(self, round_id: str) -> Optional[dict]:
        return await self.db.rounds.find_one({"id": round_id}, NO_ID)

    async def latest_round(self, game_type: str) -> Optional[dict]:
        rounds = await self.db.rounds.find({"game_type": game_type}, NO_ID).sort("round_number", DESCENDING).limit(1).to_list(1)
        return rounds[0] if rounds else None

    async def current_unresolved_round(self, game_type: str) -> Optional[dict]:
        rounds = await self.db.rounds.find(
            {"game_type": game_type, "status": {"$in": list(UNRESOLVED_STATUSES)}},
            NO_ID,
        ).sort("round_number", DESCENDING).limit(1).to_list(1)
        return rounds[0] if rounds else None

    async def transition_round(self, round_id: str, from_statuses: Iterable[str], set_fields: dict,
                               extra_filter: Optional[dict] = None) -> Optional[dict]:
        """Conditional status change. Exactly one concurrent caller gets the updated doc back."""
        query = {"id": round_id, "status": {"$in": list(from_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        return await self._find_and_update(self.db.rounds, query, {"$set": set_fields})

    async def fix_draw(self, round_id: str, draw: dict, from_statuses: Iterable[str]) -> bool:
        """Write the round's draw once. False when a draw already exists."""
        res = await self.db.rounds.update_one(
            {"id": round_id, "status": {"$in": list(from_statuses)}, "draw": None},
            {"$set": {"draw": draw}},
        )
        return res.modified_count > 0

    async def record_resolve_failure(self, round_id: str, error: str, max_attempts: int) -> Optional[dict]:
        doc = await self._find_and_update(
            self.db.rounds,
            {"id": round_id},
            {"$inc": {"resolve_attempts": 1}, "$set": {"last_error": error}},
        )
        if doc and doc.get("resolve_attempts", 0) >= max_attempts and not doc.get("stuck"):
            await self.db.rounds.update_one({"id": round_id}, {"$set": {"stuck": True}})
            doc["stuck"] = True
        return doc

    async def clear_stuck(self, round_id: str) -> bool:
        res = await self.db.rounds.update_one(
            {"id": round_id, "status": {"$ne": RESOLVED}},
            {"$set": {"stuck": False, "resolve_attempts": 0, "last_error": None}},
        )
        return res.matched_count > 0

    async def recent_resolved_rounds(self, game_type: str, limit: int) -> List[dict]:
        return await self.db.rounds.find(
            {"game_type": game_type, "status": RESOLVED},
            {"_id": 0, "id": 1, "round_number": 1, "outcome": 1, "resolved_at": 1, "created_at": 1},
        ).sort("round_number", DESCENDING).limit(limit).to_list(limit)

    # ----- Bets -----
    async def insert_bet(self, doc: dict) -> None:
        await self.db.bets.insert_one(doc)
        doc.pop("_id", None)

    async def get_bet(self, bet_id: str) -> Optional[dict]:
        return await self.db.bets.find_one({"id": bet_id}, NO_ID)

    async def pending_bets(self, round_id: str) -> List[dict]:
        return await self.db.bets.find({"round_id": round_id, "status": PENDING}, NO_ID).sort("created_at", 1).to_list(None)

    async def round_bets(self, round_id: str) -> List[dict]:
        return await self.db.bets.find({"round_id": round_id}, NO_ID).sort("created_at", DESCENDING).to_list(None)

    async def account_round_stake(self, account_id: str, round_id: str) -> int:
        bets = await self.db.bets.find({"account_id": account_id, "round_id": round_id}, {"_id": 0, "stake_cents": 1}).to_list(None)
        return sum(int(b.get("stake_cents") or 0) for b in bets)

    async def account_has_pending_bet(self, account_id: str) -> bool:
        return await self.db.bets.find_one({"account_id": account_id, "status": PENDING}, {"_id": 0, "id": 1}) is not None

    async def finalize_bet(self, bet_id: str, fields: dict, from_statuses: Iterable[str] = (PENDING,)) -> bool:
        """Conditional bet status change. False when the bet already left from_statuses."""
        res = await self.db.bets.update_one({"id": bet_id, "status": {"$in": list(from_statuses)}}, {"$set": fields})
        return res.modified_count > 0

    async def refund_bet(self, account_id: str, bet_id: str, cents: int) -> Tuple[Optional[dict], bool]:
        """Return a voided bet's stake exactly once (same marker as apply_bet_settlement)."""
        after = await self._find_and_update(
            self.db.accounts,
            {"id": account_id, "settled_bets": {"$ne": bet_id}},
            {
                "$inc": {"balance_cents": int(cents)},
                "$push": {"settled_bets": {"$each": [bet_id], "$slice": -SETTLED_BET_MEMORY}},
            },
            {"id": 1, "balance_cents": 1, "lifetime_xp_milli": 1},
        )
        if after is not None:
            return after, True
        existing = await self.db.accounts.find_one(
            {"id": account_id, "settled_bets": bet_id},
            {"_id": 0, "id": 1, "balance_cents": 1, "lifetime_xp_milli": 1},
        )
        return existing, False

    async def account_bets(self, account_id: str, limit: int = 50) -> List[dict]:
        return await self.db.bets.find({"account_id": account_id}, NO_ID).sort("created_at", DESCENDING).limit(limit).to_list(limit)

    # ----- History (append-only, one record per settled bet) -----
    async def record_history(self, entry: dict) -> None:
        await self.db.game_history.update_one(
            {"bet_id": entry["bet_id"]},
            {"$setOnInsert": entry},
            upsert=True,
        )

    async def account_history(self, account_id: str, limit: int = 50) -> List[dict]:
        return await self.db.game_history.find({"account_id": account_id}, NO_ID).sort("created_at", DESCENDING).limit(limit).to_list(limit)

    # ----- Level rewards -----
    async def create_level_reward(self, account_id: str, level: int, bonus_cents: int, source: str, now: datetime) -> bool:
        """Create the reward for reaching level once per account. True when newly created."""
        res = await self.db.level_rewards.update_one(
            {"account_id": account_id, "level": int(level)},
            {"$setOnInsert": {
                "id": new_id(),
                "account_id": account_id,
                "level": int(level),
                "bonus_cents": int(bonus_cents),
                "claimed": False,
                "source": source,
                "created_at": iso(now),
            }},
            upsert=True,
        )
        return res.upserted_id is not None

    async def claim_level_reward(self, account_id: str, level: int, now: datetime) -> Optional[dict]:
        return await self._find_and_update(
            self.db.level_rewards,
            {"account_id": account_id, "level": int(level), "claimed": False},
            {"$set": {"claimed": True, "claimed_at": iso(now)}},
        )

    async def unclaim_level_reward(self, account_id: str, level: int) -> None:
        await self.db.level_rewards.update_one(
            {"account_id": account_id, "level": int(level)},
            {"$set": {"claimed": False}, "$unset": {"claimed_at": ""}},
        )

    async def level_rewards(self, account_id: str) -> List[dict]:
        return await self.db.level_rewards.find({"account_id": account_id}, NO_ID).sort("level", 1).to_list(None)

    # ----- Coinflip streaks -----
    async def insert_streak(self, doc: dict) -> None:
        await self.db.coinflip_streaks.insert_one(doc)
        doc.pop("_id", None)

    async def open_streak(self, account_id: str) -> Optional[dict]:
        streaks = await self.db.coinflip_streaks.find(
            {"account_id": account_id, "status": {"$in": list(STREAK_OPEN_STATUSES)}},
            NO_ID,
        ).sort("created_at", DESCENDING).limit(1).to_list(1)
        return streaks[0] if streaks else None

    async def transition_streak(self, streak_id: str, from_statuses: Iterable[str], set_fields: dict,
                                extra_filter: Optional[dict] = None) -> Optional[dict]:
        query = {"id": streak_id, "status": {"$in": list(from_statuses)}}
        if extra_filter:
            query.update(extra_filter)
        return await self._find_and_update(self.db.coinflip_streaks, query, {"$set": set_fields})

    async def account_streaks(self, account_id: str, limit: int = 20) -> List[dict]:
        return await self.db.coinflip_streaks.find({"account_id": account_id}, NO_ID).sort("created_at", DESCENDING).limit(limit).to_list(limit)

    # ----- Tips -----
    async def record_tip(self, doc: dict) -> None:
        await self.db.tips.insert_one(doc)
        doc.pop("_id", None)
