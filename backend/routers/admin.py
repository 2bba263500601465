# Admin: stuck rounds, manual round driving, seed reveal, security flags
from typing import Optional

from fastapi import Depends, Query

import security as security_module
from errors import CasinoError


def register(router):
    import server as srv

    get_casino = srv.get_casino
    get_admin_user = srv.get_admin_user
    http_error = srv.casino_http_error

    @router.get("/admin/rounds/stuck")
    async def stuck_rounds(admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        rounds = await c.db.rounds.find(
            {"stuck": True}, {"_id": 0, "draw": 0, "claim_token": 0}
        ).sort("created_at", -1).to_list(100)
        return {"rounds": rounds}

    @router.post("/admin/rounds/{round_id}/retry")
    async def retry_round(round_id: str, admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        try:
            return await c.retry_round(round_id)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/admin/rounds/{round_id}/lock")
    async def lock_round(round_id: str, admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        try:
            return await c.lock_round(round_id)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/admin/casino/{game}/tick")
    async def tick(game: str, admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        try:
            return await c.tick(game)
        except CasinoError as e:
            raise http_error(e)

    @router.post("/admin/seeds/reveal")
    async def reveal_seeds(admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        return {"revealed": await c.reveal_seeds()}

    @router.get("/admin/security/summary")
    async def security_summary(limit: int = Query(100, ge=1, le=1000), flag_type: Optional[str] = None,
                               admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        return await security_module.get_security_summary(c.db, limit, flag_type)

    @router.post("/admin/security/clear-old")
    async def clear_old_flags(days: int = Query(30, ge=1), admin: dict = Depends(get_admin_user), c=Depends(get_casino)):
        return {"deleted": await security_module.clear_old_security_flags(c.db, days)}
