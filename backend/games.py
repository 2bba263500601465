# Payout tables: selection validation, multipliers and win checks per game.
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from config import (
    COINFLIP,
    COINFLIP_MULTIPLIER,
    COINFLIP_SIDES,
    CRASH,
    CRASH_MAX_CASHOUT,
    CRASH_MIN_CASHOUT,
    GAME_TYPES,
    ROULETTE,
    ROULETTE_COLOR_MULTIPLIERS,
)
from errors import InvalidSelection, NotFound


def ensure_game(game_type: str) -> str:
    game = (game_type or "").strip().lower()
    if game not in GAME_TYPES:
        raise NotFound(f"Unknown game: {game_type}")
    return game


def parse_selection(game_type: str, selection: Union[str, dict, Any]) -> dict:
    """Normalize a player's selection into the dict stored on the bet."""
    if game_type == ROULETTE:
        color = selection.get("color") if isinstance(selection, dict) else selection
        color = str(color or "").strip().lower()
        if color not in ROULETTE_COLOR_MULTIPLIERS:
            raise InvalidSelection(f"Invalid bet color: {color or selection!r}")
        return {"color": color}
    if game_type == CRASH:
        raw = selection.get("cashout_at") if isinstance(selection, dict) else selection
        try:
            target = Decimal(str(raw)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidSelection(f"Invalid cash-out target: {raw!r}")
        if not target.is_finite() or target < CRASH_MIN_CASHOUT or target > CRASH_MAX_CASHOUT:
            raise InvalidSelection(f"Cash-out target must be between {CRASH_MIN_CASHOUT} and {CRASH_MAX_CASHOUT}")
        return {"cashout_at": str(target)}
    if game_type == COINFLIP:
        side = selection.get("side") if isinstance(selection, dict) else selection
        side = str(side or "").strip().lower()
        if side not in COINFLIP_SIDES:
            raise InvalidSelection(f"Invalid side: {side or selection!r}")
        return {"side": side}
    raise InvalidSelection(f"Unknown game: {game_type}")


def multiplier(game_type: str, selection: dict) -> Decimal:
    """Gross multiplier (stake included) paid when the selection wins."""
    if game_type == ROULETTE:
        return ROULETTE_COLOR_MULTIPLIERS[selection["color"]]
    if game_type == CRASH:
        return Decimal(selection["cashout_at"])
    if game_type == COINFLIP:
        return COINFLIP_MULTIPLIER
    raise InvalidSelection(f"Unknown game: {game_type}")


def is_win(game_type: str, selection: dict, outcome: dict) -> bool:
    if game_type == ROULETTE:
        return selection.get("color") == outcome.get("color")
    if game_type == CRASH:
        # Auto cash-out fires before the crash only if the target is reached
        return Decimal(selection["cashout_at"]) <= Decimal(outcome["crash_point"])
    if game_type == COINFLIP:
        return selection.get("side") == outcome.get("side")
    return False


def outcome_label(outcome: dict) -> str:
    game_type = outcome.get("game_type")
    if game_type == ROULETTE:
        return f"{outcome.get('color')} {outcome.get('slot')}"
    if game_type == CRASH:
        return f"{outcome.get('crash_point')}x"
    if game_type == COINFLIP:
        return str(outcome.get("side"))
    return "?"
