"""
Settlement engine: apply a round's fixed draw to every bet placed on it.

settle() is at-most-once per round and safe to call any number of times,
from any number of workers:

* the caller that moves the round locked -> resolving (with a claim token)
  runs the payout pass; everyone else waits for the round to become resolved
  and returns the stored summary;
* each bet's balance/XP/counter effects are one conditional account update
  keyed on the bet id, so a pass interrupted half way can be re-run;
* only the claim holder may write resolved + outcome + summary;
* a bet that reached its account but not its history is never reported
  failed: the round goes back to locked and the next pass completes it.
"""
import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from pymongo.errors import PyMongoError

from config import (
    CLAIM_TTL_SECONDS,
    FAILED,
    LOCKED,
    LOST,
    PENDING,
    RESOLVED,
    RESOLVING,
    SETTLE_POLL_INTERVAL,
    SETTLE_WAIT_SECONDS,
    VOID,
    WON,
)
from errors import (
    CasinoError,
    ConsistencyViolation,
    NotFound,
    RoundNotReady,
    SettlementIncomplete,
    SettlementInProgress,
)
from fairness import public_outcome
from feed import BET_SETTLED, BET_VOIDED, LEVEL_UP, ChangeFeed
from games import is_win, outcome_label
from ledger import Ledger, iso, new_id, utcnow
from levels import level_for_xp, level_up_bonus_cents, to_xp, xp_for_stake
from money import payout_cents

logger = logging.getLogger(__name__)

_OUTCOME_KEYS = ("game_type", "slot", "color", "crash_point", "side")


def same_outcome(a: dict, b: dict) -> bool:
    return all(str(a.get(k)) == str(b.get(k)) for k in _OUTCOME_KEYS if k in a or k in b)


class SettlementEngine:
    def __init__(self, ledger: Ledger, feed: ChangeFeed, clock=utcnow,
                 on_round_change: Optional[Callable[[dict], None]] = None,
                 wait_seconds: float = SETTLE_WAIT_SECONDS, poll_interval: float = SETTLE_POLL_INTERVAL,
                 claim_ttl_seconds: float = CLAIM_TTL_SECONDS):
        self.ledger = ledger
        self.feed = feed
        self._clock = clock
        self._on_round_change = on_round_change
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.claim_ttl_seconds = claim_ttl_seconds

    async def settle(self, round_id: str, outcome: Optional[dict] = None) -> dict:
        """Settle every bet of a locked round. Returns the SettlementSummary."""
        round_doc = await self.ledger.get_round(round_id)
        if not round_doc:
            raise NotFound("Round not found", round_id=round_id)

        if round_doc["status"] == RESOLVED:
            if outcome is not None and not same_outcome(outcome, round_doc.get("outcome") or {}):
                logger.error("Settle called on resolved round %s with different outcome data", round_id)
                raise ConsistencyViolation("Round already resolved with a different outcome", round_id=round_id)
            return round_doc["summary"]

        if round_doc["status"] not in (LOCKED, RESOLVING) or not round_doc.get("draw"):
            raise RoundNotReady("Round has no fixed outcome yet", round_id=round_id, status=round_doc["status"])
        if outcome is not None and not same_outcome(outcome, round_doc["draw"]):
            raise ConsistencyViolation("Outcome does not match the round's fixed draw", round_id=round_id)

        claimed = await self._claim(round_id)
        if not claimed:
            return await self._wait_for_resolution(round_id)

        summary, incomplete = await self._run_pass(claimed)
        if incomplete:
            await self._release_claim(claimed)
            raise SettlementIncomplete(
                f"{len(incomplete)} bet(s) were applied to their accounts but not recorded; settle again",
                round_id=round_id, bet_ids=incomplete,
            )
        now = self._clock()
        done = await self.ledger.transition_round(
            round_id,
            [RESOLVING],
            {
                "status": RESOLVED,
                "outcome": public_outcome(claimed["draw"]),
                "summary": summary,
                "resolved_at": iso(now),
                "claim_token": None,
            },
            extra_filter={"claim_token": claimed["claim_token"]},
        )
        if done is None:
            # Our claim went stale and another worker took the round over
            logger.warning("Lost settlement claim on round %s before completion", round_id)
            return await self._wait_for_resolution(round_id)

        self._round_changed(done)
        logger.info(
            "Round %s #%s resolved (%s): %s bets, %s winners, %s failed, %s voided",
            done["game_type"], done["round_number"], outcome_label(done["outcome"]),
            summary["bets_processed"], summary["winners_processed"],
            len(summary["failed_bet_ids"]), len(summary["voided_bet_ids"]),
        )
        await self.void_orphaned_bets(done)
        return summary

    async def _claim(self, round_id: str) -> Optional[dict]:
        now = self._clock()
        fields = {"status": RESOLVING, "claim_token": str(uuid.uuid4()), "claimed_at": iso(now)}
        claimed = await self.ledger.transition_round(round_id, [LOCKED], fields)
        if claimed is None:
            stale_before = iso(now - timedelta(seconds=self.claim_ttl_seconds))
            claimed = await self.ledger.transition_round(
                round_id, [RESOLVING], fields, extra_filter={"claimed_at": {"$lt": stale_before}}
            )
            if claimed is not None:
                logger.warning("Re-claimed stale settlement of round %s", round_id)
        if claimed is not None:
            self._round_changed(claimed)
        return claimed

    async def _release_claim(self, claimed: dict) -> None:
        """Hand an unfinished round back as locked so the next settle() re-claims it at once."""
        released = await self.ledger.transition_round(
            claimed["id"], [RESOLVING], {"status": LOCKED, "claim_token": None, "claimed_at": None},
            extra_filter={"claim_token": claimed["claim_token"]},
        )
        if released is not None:
            self._round_changed(released)
        logger.error("Round %s left locked: settlement incomplete", claimed["id"])

    async def _reached_account(self, bet: dict) -> bool:
        try:
            return await self.ledger.bet_applied(bet["account_id"], bet["id"])
        except PyMongoError as e:
            # Unknown counts as applied: a paid bet must never be reported failed
            logger.error("Could not check bet %s on its account: %s", bet["id"], e)
            return True

    async def _wait_for_resolution(self, round_id: str) -> dict:
        deadline = time.monotonic() + self.wait_seconds
        while True:
            doc = await self.ledger.get_round(round_id)
            if doc and doc["status"] == RESOLVED:
                return doc["summary"]
            if time.monotonic() >= deadline:
                raise SettlementInProgress("Round is being settled by another worker", round_id=round_id)
            await asyncio.sleep(self.poll_interval)

    async def _run_pass(self, round_doc: dict) -> Tuple[dict, List[str]]:
        """Process every bet once and build the summary from the bets' final state.

        Also returns the ids of bets whose account effects landed but whose
        remaining steps failed; those stay pending for the next pass.
        """
        bets = await self.ledger.round_bets(round_doc["id"])
        bets.sort(key=lambda b: b["created_at"])
        summary = {
            "round_id": round_doc["id"],
            "bets_processed": 0,
            "winners_processed": 0,
            "total_xp_awarded": "0.000",
            "failed_bet_ids": [],
            "voided_bet_ids": [],
        }
        total_xp_milli = 0
        incomplete = []
        for bet in bets:
            status = bet["status"]
            if status in (PENDING, FAILED):
                try:
                    bet = await self._settle_bet(round_doc, bet)
                    status = bet["status"]
                except Exception as e:
                    # One bad record never blocks the rest of the round
                    logger.exception("Settlement of bet %s in round %s failed: %s", bet["id"], round_doc["id"], e)
                    if await self._reached_account(bet):
                        incomplete.append(bet["id"])
                        continue
                    await self._mark_failed(bet, e)
                    status = FAILED
            if status in (WON, LOST):
                summary["bets_processed"] += 1
                total_xp_milli += int(bet.get("xp_awarded_milli") or 0)
                if status == WON:
                    summary["winners_processed"] += 1
            elif status == VOID:
                summary["voided_bet_ids"].append(bet["id"])
            elif status == FAILED:
                summary["failed_bet_ids"].append(bet["id"])
        summary["total_xp_awarded"] = str(to_xp(total_xp_milli))
        return summary, incomplete

    async def _settle_bet(self, round_doc: dict, bet: dict) -> dict:
        locked_at = round_doc.get("locked_at")
        if locked_at and bet["created_at"] > locked_at:
            return await self.void_bet(bet, "placed after the round locked")

        draw = round_doc["draw"]
        game_type = round_doc["game_type"]
        stake = int(bet["stake_cents"])
        won = is_win(game_type, bet["selection"], draw)
        payout = payout_cents(stake, bet["multiplier"]) if won else 0
        profit = payout - stake
        xp = xp_for_stake(stake)

        account, applied = await self.ledger.apply_bet_settlement(
            bet["account_id"], bet["id"], game_type, payout, stake, profit, xp, won
        )
        if account is None:
            raise NotFound("Account not found", account_id=bet["account_id"])
        if not applied:
            logger.info("Bet %s already applied to account %s; completing settlement", bet["id"], bet["account_id"])

        lifetime = int(account.get("lifetime_xp_milli") or 0)
        new_level = level_for_xp(lifetime)["level"]
        old_level = level_for_xp(lifetime - xp)["level"]
        await self.ledger.set_level_if_current(bet["account_id"], lifetime, new_level)
        if won:
            streak = int(((account.get("stats") or {}).get(game_type) or {}).get("current_streak") or 0)
            await self.ledger.raise_best_streak(bet["account_id"], game_type, streak)
        now = self._clock()
        for level in range(old_level + 1, new_level + 1):
            if await self.ledger.create_level_reward(bet["account_id"], level, level_up_bonus_cents(level), game_type, now):
                await self.feed.emit(
                    LEVEL_UP, bet["account_id"], round_id=round_doc["id"], bet_id=bet["id"],
                    lifetime_xp_milli=lifetime, data={"level": level, "bonus_cents": level_up_bonus_cents(level)},
                    key_extra=str(level),
                )

        status = WON if won else LOST
        await self.ledger.record_history({
            "id": new_id(),
            "bet_id": bet["id"],
            "account_id": bet["account_id"],
            "round_id": round_doc["id"],
            "round_number": round_doc["round_number"],
            "game_type": game_type,
            "bet_amount_cents": stake,
            "selection": bet["selection"],
            "multiplier": bet["multiplier"],
            "result": "win" if won else "loss",
            "payout_cents": payout,
            "profit_cents": profit,
            "xp_awarded_milli": xp,
            "outcome": public_outcome(draw),
            "created_at": iso(now),
        })
        fields = {
            "status": status,
            "payout_cents": payout,
            "profit_cents": profit,
            "xp_awarded_milli": xp,
            "settled_at": iso(now),
            "failure_reason": None,
        }
        await self.ledger.finalize_bet(bet["id"], fields, from_statuses=(PENDING, FAILED))
        await self.feed.emit(
            BET_SETTLED, bet["account_id"], round_id=round_doc["id"], bet_id=bet["id"],
            delta_cents=payout, new_balance_cents=account.get("balance_cents"),
            xp_delta_milli=xp, lifetime_xp_milli=lifetime,
            data={"result": "win" if won else "loss", "profit_cents": profit, "game_type": game_type},
        )
        return dict(bet, **fields)

    async def void_bet(self, bet: dict, reason: str) -> dict:
        """Refund a bet's stake once and mark it void."""
        account, _ = await self.ledger.refund_bet(bet["account_id"], bet["id"], int(bet["stake_cents"]))
        if account is None:
            raise NotFound("Account not found", account_id=bet["account_id"])
        now = self._clock()
        fields = {"status": VOID, "payout_cents": int(bet["stake_cents"]), "profit_cents": 0,
                  "xp_awarded_milli": 0, "settled_at": iso(now), "failure_reason": reason}
        await self.ledger.finalize_bet(bet["id"], fields, from_statuses=(PENDING, FAILED))
        await self.feed.emit(
            BET_VOIDED, bet["account_id"], round_id=bet["round_id"], bet_id=bet["id"],
            delta_cents=int(bet["stake_cents"]), new_balance_cents=account.get("balance_cents"),
            lifetime_xp_milli=account.get("lifetime_xp_milli"), data={"reason": reason},
        )
        logger.info("Voided bet %s (%s)", bet["id"], reason)
        return dict(bet, **fields)

    async def void_orphaned_bets(self, round_doc: dict) -> int:
        """Bets that landed after the payout pass read the round; refund them."""
        voided = 0
        for bet in await self.ledger.pending_bets(round_doc["id"]):
            try:
                await self.void_bet(bet, "round already resolved")
                voided += 1
            except (CasinoError, PyMongoError) as e:
                logger.error("Could not void orphaned bet %s: %s", bet["id"], e)
        return voided

    async def _mark_failed(self, bet: dict, error: Exception) -> None:
        reason = getattr(error, "message", None) or str(error) or error.__class__.__name__
        try:
            await self.ledger.finalize_bet(
                bet["id"], {"status": FAILED, "failure_reason": reason, "settled_at": iso(self._clock())},
                from_statuses=(PENDING, FAILED),
            )
        except PyMongoError as e:
            logger.error("Could not mark bet %s failed: %s", bet["id"], e)

    def _round_changed(self, round_doc: dict) -> None:
        if self._on_round_change:
            self._on_round_change(round_doc)
