# Casino games: current round, bets, recent results, coinflip, provably fair seeds and verification
from decimal import Decimal
from typing import Optional, Union

from fastapi import Depends, HTTPException, Query
from pydantic import BaseModel

import security as security_module
from config import RECENT_RESULTS_LIMIT
from errors import CasinoError
from money import to_cents


class BetRequest(BaseModel):
    selection: Union[str, dict]
    amount: Decimal
    round_id: Optional[str] = None  # defaults to the game's current round


class FlipRequest(BaseModel):
    side: str
    amount: Decimal


class StreakContinueRequest(BaseModel):
    side: str


class ClientSeedRequest(BaseModel):
    client_seed: str


def register(router):
    import server as srv

    get_casino = srv.get_casino
    get_current_user = srv.get_current_user
    get_admin_user = srv.get_admin_user
    http_error = srv.casino_http_error

    # ----- Rounds -----
    @router.get("/casino/{game}/round")
    async def current_round(game: str, c=Depends(get_casino)):
        try:
            return await c.get_current_round(game)
        except CasinoError as e:
            raise http_error(e)

    @router.get("/casino/{game}/recent")
    async def recent_results(game: str, limit: int = Query(RECENT_RESULTS_LIMIT, ge=1, le=RECENT_RESULTS_LIMIT),
                             c=Depends(get_casino)):
        try:
            return {"results": await c.get_recent_results(game, limit)}
        except CasinoError as e:
            raise http_error(e)

    @router.get("/casino/rounds/{round_id}")
    async def get_round(round_id: str, c=Depends(get_casino)):
        try:
            return await c.get_round(round_id)
        except CasinoError as e:
            raise http_error(e)

    @router.get("/casino/rounds/{round_id}/bets")
    async def round_bets(round_id: str, c=Depends(get_casino)):
        return {"bets": await c.get_round_bets(round_id)}

    @router.get("/casino/rounds/{round_id}/verify")
    async def verify_round(round_id: str, c=Depends(get_casino)):
        try:
            return await c.verify_round(round_id)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/casino/rounds/{round_id}/resolve")
    async def resolve_round(round_id: str, admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        try:
            return {"round_id": round_id, "outcome": await c.resolve_round(round_id)}
        except CasinoError as e:
            raise http_error(e)

    @router.post("/casino/rounds/{round_id}/settle")
    async def settle_round(round_id: str, admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        try:
            return await c.settle(round_id)
        except CasinoError as e:
            raise http_error(e)

    # ----- Bets -----
    @router.post("/casino/{game}/bet")
    async def place_bet(game: str, request: BetRequest, current_user: dict = Depends(get_current_user),
                        c=Depends(get_casino)):
        try:
            round_id = request.round_id
            if not round_id:
                round_id = (await c.get_current_round(game))["id"]
            else:
                current = await c.get_round(round_id)
                if current["game_type"] != game.strip().lower():
                    raise HTTPException(status_code=400, detail="Round belongs to another game")
            bet = await c.place_bet(current_user["id"], round_id, request.selection, request.amount)
        except CasinoError as e:
            raise http_error(e)
        await security_module.check_negative_balance(c.db, current_user["id"], current_user.get("username", ""))
        return {"bet": bet, "new_balance": await c.get_balance(current_user["id"])}

    @router.get("/casino/bets/me")
    async def my_bets(limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user),
                      c=Depends(get_casino)):
        return {"bets": await c.get_account_bets(current_user["id"], limit)}

    # ----- Coinflip -----
    @router.post("/casino/coinflip/flip")
    async def flip(request: FlipRequest, current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            result = await c.flip(current_user["id"], request.side, request.amount)
        except CasinoError as e:
            raise http_error(e)
        if result["won"]:
            await security_module.check_impossible_gain(
                c.db, current_user["id"], current_user.get("username", ""),
                to_cents(result["bet"]["profit"]), "coinflip",
            )
        return result

    @router.get("/casino/coinflip/streak")
    async def current_streak(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        return {"streak": await c.get_streak(current_user["id"])}

    @router.get("/casino/coinflip/streaks")
    async def streak_history(limit: int = Query(20, ge=1, le=100), current_user: dict = Depends(get_current_user),
                             c=Depends(get_casino)):
        return {"streaks": await c.streak_history(current_user["id"], limit)}

    @router.post("/casino/coinflip/streak")
    async def start_streak(request: FlipRequest, current_user: dict = Depends(get_current_user),
                           c=Depends(get_casino)):
        try:
            return await c.start_streak(current_user["id"], request.side, request.amount)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/casino/coinflip/streak/continue")
    async def continue_streak(request: StreakContinueRequest, current_user: dict = Depends(get_current_user),
                              c=Depends(get_casino)):
        try:
            result = await c.continue_streak(current_user["id"], request.side)
        except CasinoError as e:
            raise http_error(e)
        if result["won"]:
            await security_module.check_impossible_gain(
                c.db, current_user["id"], current_user.get("username", ""),
                to_cents(result["bet"]["profit"]), "coinflip",
            )
        return result

    @router.post("/casino/coinflip/streak/cash-out")
    async def cash_out_streak(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            return await c.cash_out_streak(current_user["id"])
        except CasinoError as e:
            raise http_error(e)

    # ----- Provably fair -----
    @router.get("/casino/daily-seed")
    async def daily_seed(c=Depends(get_casino)):
        try:
            return await c.get_daily_seed()
        except CasinoError as e:
            raise http_error(e)

    @router.get("/casino/client-seed")
    async def get_client_seed(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        return {"client_seed": await c.get_client_seed(current_user["id"])}

    @router.post("/casino/client-seed")
    async def set_client_seed(request: ClientSeedRequest, current_user: dict = Depends(get_current_user),
                              c=Depends(get_casino)):
        try:
            return await c.set_client_seed(current_user["id"], request.client_seed)
        except CasinoError as e:
            raise http_error(e)
