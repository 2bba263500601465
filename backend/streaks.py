"""
Coinflip streaks: keep a winning flip riding, or cash it out.

The first flip stakes the player's amount. Every continue re-stakes the whole
riding value on a new private coinflip round, so after n wins the streak is
worth stake * 1.98^n (rounded down to the cent at each flip). Each flip is an
ordinary coinflip bet placed and settled like any other; a winning flip is
credited by settlement, which is why cashing out moves no money and only
closes the streak. A loss ends the streak with nothing riding.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from config import (
    CLAIM_TTL_SECONDS,
    COINFLIP_MULTIPLIER,
    LOST,
    STREAK_ACTIVE,
    STREAK_CASHED_OUT,
    STREAK_FLIPPING,
    STREAK_LOST,
    STREAK_MULTIPLIER_PLACES,
    STREAK_VOID,
    WON,
)
from errors import CasinoError, NotFound, ValidationError
from feed import STREAK_CASH_OUT, ChangeFeed
from ledger import Ledger, iso, new_id, utcnow
from money import from_cents

logger = logging.getLogger(__name__)

_ACTIONS = {STREAK_ACTIVE: "continue", STREAK_LOST: "lost", STREAK_VOID: "void", STREAK_CASHED_OUT: "cash_out"}


def streak_multiplier(wins: int) -> Decimal:
    return (COINFLIP_MULTIPLIER ** int(wins)).quantize(STREAK_MULTIPLIER_PLACES)


def public_streak(doc: dict) -> dict:
    return {
        "id": doc["id"],
        "status": doc["status"],
        "wins": doc["wins"],
        "stake": from_cents(doc["stake_cents"]),
        "riding": from_cents(doc["riding_cents"]),
        "multiplier": streak_multiplier(doc["wins"]),
        "next_multiplier": streak_multiplier(doc["wins"] + 1),
        "bet_ids": list(doc.get("bet_ids") or []),
        "created_at": doc.get("created_at"),
        "ended_at": doc.get("ended_at"),
    }


class CoinflipStreaks:
    def __init__(self, ledger: Ledger, feed: ChangeFeed, flip: Callable[[str, Any, Any], Awaitable[dict]],
                 balance: Callable[[str], Awaitable[Decimal]], clock=utcnow,
                 stale_after_seconds: float = CLAIM_TTL_SECONDS):
        self.ledger = ledger
        self.feed = feed
        self._flip = flip
        self._balance = balance
        self._clock = clock
        self.stale_after_seconds = stale_after_seconds

    async def current(self, account_id: str) -> Optional[dict]:
        doc = await self.ledger.open_streak(account_id)
        return public_streak(doc) if doc else None

    async def history(self, account_id: str, limit: int = 20) -> List[dict]:
        return [public_streak(d) for d in await self.ledger.account_streaks(account_id, limit)]

    async def start(self, account_id: str, side: Any, stake: Any) -> dict:
        if await self.ledger.open_streak(account_id):
            raise ValidationError("Cash out or finish your current streak first")
        result = await self._flip(account_id, side, stake)
        bet = await self.ledger.get_bet(result["bet"]["id"])
        now = self._clock()
        doc = {
            "id": new_id(),
            "account_id": account_id,
            "stake_cents": int(bet["stake_cents"]),
            "riding_cents": 0,
            "wins": 0,
            "status": STREAK_FLIPPING,
            "bet_ids": [],
            "created_at": iso(now),
            "updated_at": iso(now),
            "ended_at": None,
        }
        doc.update(self._after_flip(doc, bet))
        await self.ledger.insert_streak(doc)
        logger.info("Coinflip streak %s for %s started: %s", doc["id"], account_id, doc["status"])
        return self._flip_result(doc, result)

    async def continue_streak(self, account_id: str, side: Any) -> dict:
        doc = await self._open_or_raise(account_id)
        claimed = await self._take(doc, {"status": STREAK_FLIPPING, "updated_at": iso(self._clock())})
        if claimed is None:
            raise ValidationError("This streak is already being flipped")
        try:
            result = await self._flip(account_id, side, from_cents(claimed["riding_cents"]))
        except CasinoError:
            await self.ledger.transition_streak(claimed["id"], [STREAK_FLIPPING], {"status": STREAK_ACTIVE})
            raise
        bet = await self.ledger.get_bet(result["bet"]["id"])
        updated = await self.ledger.transition_streak(claimed["id"], [STREAK_FLIPPING], self._after_flip(claimed, bet))
        if updated is None:
            # Taken over as stale while we flipped; the bet itself is settled either way
            logger.warning("Streak %s changed during its flip", claimed["id"])
            updated = dict(claimed, **self._after_flip(claimed, bet))
        return self._flip_result(updated, result)

    async def cash_out(self, account_id: str) -> dict:
        doc = await self._open_or_raise(account_id)
        now = self._clock()
        closed = await self._take(doc, {"status": STREAK_CASHED_OUT, "updated_at": iso(now), "ended_at": iso(now)})
        if closed is None:
            raise ValidationError("This streak is being flipped; cash out after the flip")
        riding = int(closed["riding_cents"])
        await self.feed.emit(
            STREAK_CASH_OUT, account_id,
            data={"streak_id": closed["id"], "wins": closed["wins"], "payout_cents": riding,
                  "multiplier": str(streak_multiplier(closed["wins"]))},
            key_extra=closed["id"],
        )
        logger.info("Coinflip streak %s cashed out after %s wins (%s cents)", closed["id"], closed["wins"], riding)
        return {
            "streak": public_streak(closed),
            "action": _ACTIONS[STREAK_CASHED_OUT],
            "payout": from_cents(riding),
            "profit": from_cents(riding - int(closed["stake_cents"])),
            "new_balance": await self._balance(account_id),
        }

    async def _open_or_raise(self, account_id: str) -> dict:
        doc = await self.ledger.open_streak(account_id)
        if not doc:
            raise NotFound("No active coinflip streak")
        return doc

    async def _take(self, doc: dict, fields: dict) -> Optional[dict]:
        """Move an active streak on; a flip that never finished can be taken over once stale."""
        taken = await self.ledger.transition_streak(doc["id"], [STREAK_ACTIVE], fields, extra_filter={"wins": doc["wins"]})
        if taken is None and doc["status"] == STREAK_FLIPPING:
            stale_before = iso(self._clock() - timedelta(seconds=self.stale_after_seconds))
            taken = await self.ledger.transition_streak(
                doc["id"], [STREAK_FLIPPING], fields, extra_filter={"updated_at": {"$lt": stale_before}}
            )
            if taken is not None:
                logger.warning("Took over stale coinflip streak %s", doc["id"])
        return taken

    def _after_flip(self, doc: dict, bet: dict) -> dict:
        now = iso(self._clock())
        fields = {"bet_ids": list(doc.get("bet_ids") or []) + [bet["id"]], "updated_at": now}
        if bet["status"] == WON:
            fields.update(status=STREAK_ACTIVE, wins=doc["wins"] + 1, riding_cents=int(bet["payout_cents"]))
        else:
            status = STREAK_LOST if bet["status"] == LOST else STREAK_VOID
            fields.update(status=status, riding_cents=0, ended_at=now)
        return fields

    def _flip_result(self, doc: dict, result: dict) -> dict:
        return {
            "streak": public_streak(doc),
            "action": _ACTIONS[doc["status"]],
            "won": result["won"],
            "outcome": result["outcome"],
            "bet": result["bet"],
            "new_balance": result["new_balance"],
        }
