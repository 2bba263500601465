"""
Shared game constants. No database or request dependencies.
Imported by server.py, the settlement core and the routers.
"""
import os
from decimal import Decimal

# Games
ROULETTE = "roulette"
CRASH = "crash"
COINFLIP = "coinflip"
ROUND_GAMES = (ROULETTE, CRASH)
GAME_TYPES = (ROULETTE, CRASH, COINFLIP)

# Round statuses (forward-only; an incomplete settlement hands resolving back to locked)
OPEN = "open"
LOCKED = "locked"
RESOLVING = "resolving"
RESOLVED = "resolved"
UNRESOLVED_STATUSES = (OPEN, LOCKED, RESOLVING)

# Bet statuses
PENDING = "pending"
WON = "won"
LOST = "lost"
VOID = "void"
FAILED = "failed"

# Roulette wheel: 15 slots in reel order. House edge lives in the multipliers.
WHEEL_SLOTS = [
    {"slot": 0, "color": "green", "multiplier": 14},
    {"slot": 11, "color": "black", "multiplier": 2},
    {"slot": 5, "color": "red", "multiplier": 2},
    {"slot": 10, "color": "black", "multiplier": 2},
    {"slot": 6, "color": "red", "multiplier": 2},
    {"slot": 9, "color": "black", "multiplier": 2},
    {"slot": 7, "color": "red", "multiplier": 2},
    {"slot": 8, "color": "black", "multiplier": 2},
    {"slot": 1, "color": "red", "multiplier": 2},
    {"slot": 14, "color": "black", "multiplier": 2},
    {"slot": 2, "color": "red", "multiplier": 2},
    {"slot": 13, "color": "black", "multiplier": 2},
    {"slot": 3, "color": "red", "multiplier": 2},
    {"slot": 12, "color": "black", "multiplier": 2},
    {"slot": 4, "color": "red", "multiplier": 2},
]
ROULETTE_COLOR_MULTIPLIERS = {"green": Decimal("14"), "red": Decimal("2"), "black": Decimal("2")}

# Crash: auto cash-out target chosen at bet time
CRASH_HOUSE_EDGE = Decimal("0.01")
CRASH_MIN_CASHOUT = Decimal("1.01")
CRASH_MAX_CASHOUT = Decimal("1000000")

# Coinflip: 1% house edge on an even-money flip
COINFLIP_SIDES = ("heads", "tails")
COINFLIP_MULTIPLIER = Decimal("1.98")

# Coinflip streaks: a win may ride on the next flip until cashed out or lost
STREAK_ACTIVE = "active"
STREAK_FLIPPING = "flipping"
STREAK_CASHED_OUT = "cashed_out"
STREAK_LOST = "lost"
STREAK_VOID = "void"
STREAK_OPEN_STATUSES = (STREAK_ACTIVE, STREAK_FLIPPING)
STREAK_MULTIPLIER_PLACES = Decimal("0.0001")

# Round timing (seconds)
BETTING_DURATION = {ROULETTE: 25, CRASH: 10, COINFLIP: 0}
INTER_ROUND_DELAY = {ROULETTE: 4, CRASH: 5, COINFLIP: 0}
ROUND_LOOP_INTERVAL = float(os.environ.get("ROUND_LOOP_INTERVAL", "1.0"))

# Settlement / resolution
CLAIM_TTL_SECONDS = 60
SETTLE_WAIT_SECONDS = 10.0
SETTLE_POLL_INTERVAL = 0.05
MAX_RESOLVE_ATTEMPTS = 5
SETTLED_BET_MEMORY = 500  # bet ids kept on the account for idempotent re-application

# Stakes (cents)
MIN_BET_CENTS = 1
MAX_BET_CENTS = 100_000_000            # $1,000,000 per bet
MAX_STAKE_PER_ROUND_CENTS = 10_000_000  # $100,000 per account per round
MAX_PAYOUT_CENTS = 1_400_000_000

# XP: 10% of the wager, tracked to 0.001 XP (stored as milli-XP).
XP_RATE = Decimal("0.1")

# Level curve: xp needed to go from level n-1 to level n.
LEVEL_XP_REQUIRED = {
    2: 100,
    3: 150,
    4: 200,
    5: 300,
    6: 400,
    7: 500,
    8: 600,
    9: 700,
    10: 800,
}
LEVEL_XP_STEP_AFTER_TABLE = 100  # each level past the table costs 100 XP more than the previous
LEVEL_UP_BONUS_CENTS_PER_LEVEL = 100  # reaching level n pays n dollars

# Provably fair
DAILY_SEED_BYTES = 32
LOTTO_LENGTH = 10
CLIENT_SEED_MIN_LENGTH = 8
CLIENT_SEED_MAX_LENGTH = 64
CLIENT_SEED_CHANGE_INTERVAL = 60
DEFAULT_CLIENT_SEED = "default_client_seed"
HIDDEN_UNTIL_DAY_ENDS = "[HIDDEN_UNTIL_DAY_ENDS]"

# Accounts
STARTING_BALANCE_CENTS = int(os.environ.get("STARTING_BALANCE_CENTS", "0"))
MAX_TIP_CENTS = 100_000_000

# Query cache
RECENT_RESULTS_LIMIT = 15
QUERY_CACHE_TTL_SEC = 2
QUERY_CACHE_MAX_ENTRIES = 1000

# Rate limiting
MIN_BET_INTERVAL_SECONDS = float(os.environ.get("MIN_BET_INTERVAL_SECONDS", "1.0"))
