# Typed RPC endpoint: one request variant per casino action, validated before it reaches the engine
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from fastapi import Depends
from pydantic import BaseModel, Field, RootModel

from errors import CasinoError


class PlaceBetAction(BaseModel):
    action: Literal["place_bet"]
    game: str
    selection: Union[str, dict]
    amount: Decimal
    round_id: Optional[str] = None


class CurrentRoundAction(BaseModel):
    action: Literal["get_current_round"]
    game: str


class RoundBetsAction(BaseModel):
    action: Literal["get_round_bets"]
    round_id: str


class RecentResultsAction(BaseModel):
    action: Literal["get_recent_results"]
    game: str
    limit: int = Field(default=15, ge=1, le=15)


class VerifyRoundAction(BaseModel):
    action: Literal["verify_round"]
    round_id: str


class FlipAction(BaseModel):
    action: Literal["flip"]
    side: str
    amount: Decimal


class StartStreakAction(BaseModel):
    action: Literal["start_streak"]
    side: str
    amount: Decimal


class ContinueStreakAction(BaseModel):
    action: Literal["continue_streak"]
    side: str


class CashOutStreakAction(BaseModel):
    action: Literal["cash_out_streak"]


class SetClientSeedAction(BaseModel):
    action: Literal["set_client_seed"]
    client_seed: str


class BalanceAction(BaseModel):
    action: Literal["get_balance"]


class LevelStatsAction(BaseModel):
    action: Literal["get_level_stats"]


RpcAction = Annotated[
    Union[
        PlaceBetAction,
        CurrentRoundAction,
        RoundBetsAction,
        RecentResultsAction,
        VerifyRoundAction,
        FlipAction,
        StartStreakAction,
        ContinueStreakAction,
        CashOutStreakAction,
        SetClientSeedAction,
        BalanceAction,
        LevelStatsAction,
    ],
    Field(discriminator="action"),
]


class RpcRequest(RootModel[RpcAction]):
    pass


async def dispatch(c, account: dict, req) -> object:
    """Run one validated action against the casino facade."""
    account_id = account["id"]
    if isinstance(req, PlaceBetAction):
        round_id = req.round_id or (await c.get_current_round(req.game))["id"]
        return {"bet": await c.place_bet(account_id, round_id, req.selection, req.amount)}
    if isinstance(req, CurrentRoundAction):
        return await c.get_current_round(req.game)
    if isinstance(req, RoundBetsAction):
        return {"bets": await c.get_round_bets(req.round_id)}
    if isinstance(req, RecentResultsAction):
        return {"results": await c.get_recent_results(req.game, req.limit)}
    if isinstance(req, VerifyRoundAction):
        return await c.verify_round(req.round_id)
    if isinstance(req, FlipAction):
        return await c.flip(account_id, req.side, req.amount)
    if isinstance(req, StartStreakAction):
        return await c.start_streak(account_id, req.side, req.amount)
    if isinstance(req, ContinueStreakAction):
        return await c.continue_streak(account_id, req.side)
    if isinstance(req, CashOutStreakAction):
        return await c.cash_out_streak(account_id)
    if isinstance(req, SetClientSeedAction):
        return await c.set_client_seed(account_id, req.client_seed)
    if isinstance(req, BalanceAction):
        return {"balance": await c.get_balance(account_id)}
    if isinstance(req, LevelStatsAction):
        return await c.get_level_stats(account_id)
    raise TypeError(f"Unhandled action {type(req).__name__}")


def register(router):
    import server as srv

    get_casino = srv.get_casino
    get_current_user = srv.get_current_user
    http_error = srv.casino_http_error

    @router.post("/casino/rpc")
    async def rpc(request: RpcRequest, current_user: dict = Depends(get_current_user), c=Depends(get_casino)):
        req = request.root
        try:
            result = await dispatch(c, current_user, req)
        except CasinoError as e:
            raise http_error(e)
        return {"action": req.action, "result": result}
