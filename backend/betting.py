# Bet placement: validate, take the stake atomically, record the bet.
import logging
from typing import Any

from config import (
    COINFLIP,
    MAX_BET_CENTS,
    MAX_PAYOUT_CENTS,
    MAX_STAKE_PER_ROUND_CENTS,
    MIN_BET_CENTS,
    OPEN,
    PENDING,
    RESOLVED,
)
from errors import InsufficientBalance, InvalidStake, NotFound, RoundNotOpen
from feed import BET_PLACED, ChangeFeed
from games import multiplier, parse_selection
from ledger import Ledger, iso, new_id, parse_iso, utcnow
from money import from_cents, payout_cents, to_cents
from settlement import SettlementEngine

logger = logging.getLogger(__name__)


def validate_stake(stake: Any) -> int:
    cents = to_cents(stake)
    if cents < MIN_BET_CENTS:
        raise InvalidStake(f"Minimum bet is ${from_cents(MIN_BET_CENTS)}")
    if cents > MAX_BET_CENTS:
        raise InvalidStake(f"Maximum bet is ${from_cents(MAX_BET_CENTS):,}")
    return cents


class BetPlacer:
    def __init__(self, ledger: Ledger, feed: ChangeFeed, settlement: SettlementEngine, clock=utcnow):
        self.ledger = ledger
        self.feed = feed
        self.settlement = settlement
        self._clock = clock

    async def place_bet(self, account_id: str, round_id: str, selection: Any, stake: Any) -> dict:
        round_doc = await self.ledger.get_round(round_id)
        if not round_doc:
            raise NotFound("Round not found", round_id=round_id)
        game_type = round_doc["game_type"]
        parsed = parse_selection(game_type, selection)
        stake_cents = validate_stake(stake)
        mult = multiplier(game_type, parsed)
        potential = payout_cents(stake_cents, mult)
        if potential > MAX_PAYOUT_CENTS:
            raise InvalidStake(f"Potential payout exceeds ${from_cents(MAX_PAYOUT_CENTS):,}")

        self._check_open(round_doc)
        if game_type == COINFLIP and round_doc.get("account_id") != account_id:
            raise RoundNotOpen("This flip belongs to another player")

        already = await self.ledger.account_round_stake(account_id, round_id)
        if already + stake_cents > MAX_STAKE_PER_ROUND_CENTS:
            raise InvalidStake(f"Maximum total bet per round is ${from_cents(MAX_STAKE_PER_ROUND_CENTS):,}")

        account = await self.ledger.debit_if_sufficient(account_id, stake_cents)
        if account is None:
            if not await self.ledger.get_account(account_id, {"id": 1}):
                raise NotFound("Account not found")
            raise InsufficientBalance("Insufficient balance")

        bet = {
            "id": new_id(),
            "account_id": account_id,
            "username": account.get("username"),
            "round_id": round_id,
            "round_number": round_doc["round_number"],
            "game_type": game_type,
            "selection": parsed,
            "stake_cents": stake_cents,
            "multiplier": str(mult),
            "potential_payout_cents": potential,
            "status": PENDING,
            "payout_cents": None,
            "profit_cents": None,
            "xp_awarded_milli": None,
            "failure_reason": None,
            "created_at": iso(self._clock()),
            "settled_at": None,
        }
        try:
            await self.ledger.insert_bet(bet)
        except Exception:
            # Put the stake back; the bet never existed
            await self.ledger.credit(account_id, stake_cents)
            logger.exception("Bet insert failed for %s; stake refunded", account_id)
            raise

        await self.feed.emit(
            BET_PLACED, account_id, round_id=round_id, bet_id=bet["id"],
            delta_cents=-stake_cents, new_balance_cents=account["balance_cents"],
            data={"game_type": game_type, "selection": parsed},
        )

        latest = await self.ledger.get_round(round_id)
        if latest and latest["status"] == RESOLVED:
            # Settlement already ran without this bet
            await self.settlement.void_bet(bet, "round already resolved")
            raise RoundNotOpen("Round already resolved; stake refunded")
        return bet

    def _check_open(self, round_doc: dict) -> None:
        if round_doc["status"] != OPEN or round_doc.get("stuck"):
            raise RoundNotOpen("Betting is closed for this round")
        now = self._clock()
        if round_doc.get("betting_starts_at") and now < parse_iso(round_doc["betting_starts_at"]):
            raise RoundNotOpen("Betting has not started for this round")
        if round_doc.get("betting_ends_at") and now >= parse_iso(round_doc["betting_ends_at"]):
            raise RoundNotOpen("Betting is closed for this round")

    async def account_bets(self, account_id: str, limit: int = 50) -> list:
        return await self.ledger.account_bets(account_id, limit)

    async def has_unresolved_bet(self, account_id: str) -> bool:
        return await self.ledger.account_has_pending_bet(account_id)


def public_bet(bet: dict) -> dict:
    """Bet as returned by the API (money in dollars)."""
    out = {
        "id": bet["id"],
        "account_id": bet["account_id"],
        "username": bet.get("username"),
        "round_id": bet["round_id"],
        "round_number": bet.get("round_number"),
        "game_type": bet["game_type"],
        "selection": bet["selection"],
        "stake": from_cents(bet["stake_cents"]),
        "multiplier": bet["multiplier"],
        "potential_payout": from_cents(bet["potential_payout_cents"]),
        "status": bet["status"],
        "payout": from_cents(bet["payout_cents"]) if bet.get("payout_cents") is not None else None,
        "profit": from_cents(bet["profit_cents"]) if bet.get("profit_cents") is not None else None,
        "created_at": bet["created_at"],
        "settled_at": bet.get("settled_at"),
    }
    if bet.get("failure_reason"):
        out["failure_reason"] = bet["failure_reason"]
    return out
