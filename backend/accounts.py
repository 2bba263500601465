# Account read model, level rewards and tips.
import logging
import re
from typing import Any, List

from config import MAX_TIP_CENTS
from errors import InsufficientBalance, InvalidStake, NotFound, ValidationError
from feed import REWARD_CLAIMED, TIP_RECEIVED, TIP_SENT, ChangeFeed
from ledger import Ledger, iso, new_id, utcnow
from levels import level_for_xp, level_stats_view
from money import from_cents, to_cents

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, ledger: Ledger, feed: ChangeFeed, clock=utcnow):
        self.ledger = ledger
        self.feed = feed
        self._clock = clock

    async def _account(self, account_id: str, projection: dict) -> dict:
        account = await self.ledger.get_account(account_id, projection)
        if not account:
            raise NotFound("Account not found")
        return account

    async def get_balance(self, account_id: str):
        account = await self._account(account_id, {"balance_cents": 1})
        return from_cents(account.get("balance_cents") or 0)

    async def get_level_stats(self, account_id: str) -> dict:
        account = await self._account(account_id, {"lifetime_xp_milli": 1})
        return level_stats_view(account.get("lifetime_xp_milli") or 0)

    async def get_game_stats(self, account_id: str) -> dict:
        account = await self._account(account_id, {"stats": 1})
        out = {}
        for game_type, s in (account.get("stats") or {}).items():
            out[game_type] = {
                "games_played": s.get("games_played", 0),
                "wins": s.get("wins", 0),
                "losses": s.get("losses", 0),
                "total_wagered": from_cents(s.get("wagered_cents", 0)),
                "total_profit": from_cents(s.get("profit_cents", 0)),
                "current_streak": s.get("current_streak", 0),
                "best_streak": s.get("best_streak", 0),
            }
        return out

    # ----- Level rewards -----
    async def list_level_rewards(self, account_id: str) -> List[dict]:
        return [public_reward(r) for r in await self.ledger.level_rewards(account_id)]

    async def claim_level_reward(self, account_id: str, level: int) -> dict:
        now = self._clock()
        account = await self._account(account_id, {"lifetime_xp_milli": 1})
        if level_for_xp(account.get("lifetime_xp_milli") or 0)["level"] < level:
            raise ValidationError(f"Level {level} not reached yet")
        reward = await self.ledger.claim_level_reward(account_id, level, now)
        if not reward:
            existing = [r for r in await self.ledger.level_rewards(account_id) if r["level"] == level]
            if existing and existing[0].get("claimed"):
                raise ValidationError(f"Level {level} reward already claimed")
            raise NotFound(f"No reward for level {level}")
        after = await self.ledger.credit(account_id, reward["bonus_cents"])
        if after is None:
            await self.ledger.unclaim_level_reward(account_id, level)
            raise NotFound("Account not found")
        await self.feed.emit(
            REWARD_CLAIMED, account_id, delta_cents=reward["bonus_cents"],
            new_balance_cents=after["balance_cents"], data={"level": level}, key_extra=str(level),
        )
        logger.info("Account %s claimed level %s reward (%s cents)", account_id, level, reward["bonus_cents"])
        return {"reward": public_reward(reward), "new_balance": from_cents(after["balance_cents"])}

    # ----- Tips -----
    async def tip(self, sender_id: str, recipient_username: str, amount: Any, message: str = "") -> dict:
        cents = to_cents(amount)
        if cents <= 0:
            raise InvalidStake("Tip amount must be positive")
        if cents > MAX_TIP_CENTS:
            raise InvalidStake(f"Maximum tip is ${from_cents(MAX_TIP_CENTS):,}")
        username = (recipient_username or "").strip()
        recipient = None
        if username:
            username_pattern = re.compile("^" + re.escape(username) + "$", re.IGNORECASE)
            recipient = await self.ledger.find_account({"username": username_pattern})
        if not recipient:
            raise NotFound("Recipient not found")
        if recipient["id"] == sender_id:
            raise ValidationError("You cannot tip yourself")

        sender = await self.ledger.debit_if_sufficient(sender_id, cents)
        if sender is None:
            await self._account(sender_id, {"id": 1})
            raise InsufficientBalance("Insufficient balance")
        credited = await self.ledger.credit(recipient["id"], cents)
        if credited is None:
            await self.ledger.credit(sender_id, cents)
            raise NotFound("Recipient not found")

        now = self._clock()
        tip = {
            "id": new_id(),
            "sender_id": sender_id,
            "sender_username": sender.get("username"),
            "recipient_id": recipient["id"],
            "recipient_username": recipient["username"],
            "amount_cents": cents,
            "message": (message or "")[:200],
            "created_at": iso(now),
        }
        await self.ledger.record_tip(tip)
        await self.feed.emit(TIP_SENT, sender_id, delta_cents=-cents, new_balance_cents=sender["balance_cents"],
                             data={"to": recipient["username"]}, key_extra=tip["id"])
        await self.feed.emit(TIP_RECEIVED, recipient["id"], delta_cents=cents,
                             new_balance_cents=credited["balance_cents"],
                             data={"from": sender.get("username")}, key_extra=tip["id"])
        logger.info("Tip %s: %s -> %s (%s cents)", tip["id"], sender_id, recipient["id"], cents)
        return {"tip_id": tip["id"], "amount": from_cents(cents), "new_balance": from_cents(sender["balance_cents"])}


def public_reward(reward: dict) -> dict:
    return {
        "level": reward["level"],
        "bonus": from_cents(reward["bonus_cents"]),
        "claimed": bool(reward.get("claimed")),
        "created_at": reward.get("created_at"),
        "claimed_at": reward.get("claimed_at"),
    }
