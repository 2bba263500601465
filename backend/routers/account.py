# Account read model: balance, level/XP, stats, level rewards, tips, history and the change feed
from decimal import Decimal
from typing import Optional

from fastapi import Depends, Query
from pydantic import BaseModel, Field

import security as security_module
from errors import CasinoError


class TipRequest(BaseModel):
    recipient_username: str
    amount: Decimal
    message: Optional[str] = Field(default="", max_length=200)


def register(router):
    import server as srv

    get_casino = srv.get_casino
    get_current_user = srv.get_current_user
    http_error = srv.casino_http_error

    @router.get("/account/balance")
    async def balance(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            return {"balance": await c.get_balance(current_user["id"])}
        except CasinoError as e:
            raise http_error(e)

    @router.get("/account/level")
    async def level(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            return await c.get_level_stats(current_user["id"])
        except CasinoError as e:
            raise http_error(e)

    @router.get("/account/stats")
    async def game_stats(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            return {"stats": await c.get_game_stats(current_user["id"])}
        except CasinoError as e:
            raise http_error(e)

    @router.get("/account/history")
    async def history(limit: int = Query(50, ge=1, le=200), current_user: dict = Depends(get_current_user),
                      c=Depends(get_casino)):
        return {"history": await c.history(current_user["id"], limit)}

    @router.get("/account/rewards")
    async def level_rewards(current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        return {"rewards": await c.list_level_rewards(current_user["id"])}

    @router.post("/account/rewards/{level}/claim")
    async def claim_reward(level: int, current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            return await c.claim_level_reward(current_user["id"], level)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/account/tip")
    async def tip(request: TipRequest, current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        try:
            result = await c.tip(current_user["id"], request.recipient_username, request.amount, request.message or "")
        except CasinoError as e:
            raise http_error(e)
        await security_module.check_negative_balance(c.db, current_user["id"], current_user.get("username", ""))
        return result

    @router.get("/feed")
    async def change_feed(since: Optional[str] = None, limit: int = Query(100, ge=1, le=500),
                          current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        events = await c.feed_since(current_user["id"], since, limit)
        return {"events": events, "next_since": events[-1]["created_at"] if events else since}
