# Change feed: one durable event per settled bet and per balance/XP change.
# Delivery (websocket, polling, push) is up to the consumer; GET /api/feed reads it.
import logging
from typing import Callable, List, Optional

from ledger import iso, new_id, utcnow

logger = logging.getLogger(__name__)

BET_PLACED = "bet_placed"
BET_SETTLED = "bet_settled"
BET_VOIDED = "bet_voided"
LEVEL_UP = "level_up"
REWARD_CLAIMED = "level_reward_claimed"
TIP_SENT = "tip_sent"
TIP_RECEIVED = "tip_received"
STREAK_CASH_OUT = "streak_cashed_out"


def dedupe_key(kind: str, account_id: str, round_id: Optional[str] = None, bet_id: Optional[str] = None,
               extra: Optional[str] = None) -> str:
    return ":".join(str(p) for p in (kind, round_id or "-", account_id, bet_id or "-", extra or "-"))


class ChangeFeed:
    def __init__(self, db, clock=utcnow):
        self.db = db
        self._clock = clock
        self._listeners: List[Callable[[dict], None]] = []

    def subscribe(self, listener: Callable[[dict], None]) -> None:
        """In-process listener called after each newly stored event."""
        self._listeners.append(listener)

    async def emit(self, kind: str, account_id: str, *, round_id: Optional[str] = None, bet_id: Optional[str] = None,
                   delta_cents: int = 0, new_balance_cents: Optional[int] = None, xp_delta_milli: int = 0,
                   lifetime_xp_milli: Optional[int] = None, data: Optional[dict] = None,
                   key_extra: Optional[str] = None) -> bool:
        """Store an event once per dedupe key. Returns True when the event is new."""
        key = dedupe_key(kind, account_id, round_id, bet_id, key_extra)
        event = {
            "id": new_id(),
            "kind": kind,
            "account_id": account_id,
            "round_id": round_id,
            "bet_id": bet_id,
            "delta_cents": int(delta_cents),
            "new_balance_cents": new_balance_cents,
            "xp_delta_milli": int(xp_delta_milli),
            "lifetime_xp_milli": lifetime_xp_milli,
            "data": data or {},
            "dedupe_key": key,
            "created_at": iso(self._clock()),
        }
        res = await self.db.change_feed.update_one({"dedupe_key": key}, {"$setOnInsert": event}, upsert=True)
        if res.upserted_id is None:
            return False
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.exception("Change feed listener failed: %s", e)
        return True

    async def since(self, account_id: str, since: Optional[str] = None, limit: int = 100) -> List[dict]:
        query = {"account_id": account_id}
        if since:
            query["created_at"] = {"$gt": since}
        return await self.db.change_feed.find(query, {"_id": 0}).sort("created_at", 1).limit(limit).to_list(limit)
