# Level curve: lifetime XP -> (level, xp within level, xp to next level).
# XP values here are integer milli-XP; see to_xp() for display.
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from config import LEVEL_XP_REQUIRED, LEVEL_XP_STEP_AFTER_TABLE, LEVEL_UP_BONUS_CENTS_PER_LEVEL, XP_RATE

MILLI = 1000
_LAST_TABLE_LEVEL = max(LEVEL_XP_REQUIRED)


def xp_required(level: int) -> int:
    """XP (whole points) needed to go from level-1 to level."""
    if level <= 1:
        return 0
    if level in LEVEL_XP_REQUIRED:
        return LEVEL_XP_REQUIRED[level]
    return LEVEL_XP_REQUIRED[_LAST_TABLE_LEVEL] + LEVEL_XP_STEP_AFTER_TABLE * (level - _LAST_TABLE_LEVEL)


def total_xp_required(level: int) -> int:
    """Cumulative XP (whole points) needed to reach level."""
    return sum(xp_required(n) for n in range(2, level + 1))


def level_for_xp(lifetime_xp_milli: int) -> Dict[str, int]:
    """Monotonic step function over lifetime XP. All returned XP values are milli-XP."""
    xp = max(0, int(lifetime_xp_milli or 0))
    level = 1
    floor_milli = 0
    while True:
        next_floor = floor_milli + xp_required(level + 1) * MILLI
        if xp < next_floor:
            break
        level += 1
        floor_milli = next_floor
    return {
        "level": level,
        "current_level_xp": xp - floor_milli,
        "xp_to_next_level": next_floor - xp,
        "lifetime_xp": xp,
    }


def xp_for_stake(stake_cents: int) -> int:
    """Milli-XP earned by wagering stake_cents (XP_RATE of the wager, 3 decimals)."""
    milli = Decimal(int(stake_cents)) / 100 * XP_RATE * MILLI
    return int(milli.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_xp(milli: int) -> Decimal:
    return (Decimal(int(milli or 0)) / MILLI).quantize(Decimal("0.001"))


def level_up_bonus_cents(level: int) -> int:
    return LEVEL_UP_BONUS_CENTS_PER_LEVEL * level


def level_stats_view(lifetime_xp_milli: int) -> dict:
    """Account read model for level/XP (decimal XP values)."""
    info = level_for_xp(lifetime_xp_milli)
    return {
        "level": info["level"],
        "lifetime_xp": to_xp(info["lifetime_xp"]),
        "current_level_xp": to_xp(info["current_level_xp"]),
        "xp_to_next_level": to_xp(info["xp_to_next_level"]),
    }
