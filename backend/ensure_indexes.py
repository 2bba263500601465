# Central place for MongoDB indexes. Idempotent: safe to run on every startup.
# The unique indexes carry correctness, not just speed: round numbers,
# history per bet, change-feed dedupe keys and level rewards rely on them.
import logging

logger = logging.getLogger(__name__)


async def ensure_all_indexes(db):
    """Create indexes for accounts, rounds, bets, history, streaks, seeds, rewards, tips, feed and flags."""
    try:
        # --- Accounts ---
        await db.accounts.create_index("id", unique=True)
        await db.accounts.create_index("email", unique=True)
        await db.accounts.create_index("username", unique=True)

        # --- Rounds: one creator wins per (game, round number) ---
        await db.rounds.create_index("id", unique=True)
        await db.rounds.create_index([("game_type", 1), ("round_number", 1)], unique=True)
        await db.rounds.create_index([("game_type", 1), ("status", 1), ("round_number", -1)])

        # --- Bets ---
        await db.bets.create_index("id", unique=True)
        await db.bets.create_index([("round_id", 1), ("status", 1)])
        await db.bets.create_index([("account_id", 1), ("round_id", 1)])
        await db.bets.create_index([("account_id", 1), ("status", 1)])
        await db.bets.create_index([("account_id", 1), ("created_at", -1)])

        # --- History (append-only, one per bet) ---
        await db.game_history.create_index("bet_id", unique=True)
        await db.game_history.create_index([("account_id", 1), ("created_at", -1)])

        # --- Coinflip streaks ---
        await db.coinflip_streaks.create_index("id", unique=True)
        await db.coinflip_streaks.create_index([("account_id", 1), ("status", 1)])
        await db.coinflip_streaks.create_index([("account_id", 1), ("created_at", -1)])

        # --- Provably fair ---
        await db.daily_seeds.create_index("date", unique=True)
        await db.daily_seeds.create_index("id", unique=True)
        await db.client_seeds.create_index([("account_id", 1), ("is_active", 1)])

        # --- Level rewards / tips ---
        await db.level_rewards.create_index([("account_id", 1), ("level", 1)], unique=True)
        await db.tips.create_index([("sender_id", 1), ("created_at", -1)])
        await db.tips.create_index([("recipient_id", 1), ("created_at", -1)])

        # --- Change feed ---
        await db.change_feed.create_index("dedupe_key", unique=True)
        await db.change_feed.create_index([("account_id", 1), ("created_at", 1)])

        # --- Security ---
        await db.security_flags.create_index([("user_id", 1), ("created_at", -1)])
        await db.security_flags.create_index([("flag_type", 1), ("created_at", -1)])

        logger.info("All indexes ensured")
    except Exception as e:
        logger.exception("ensure_all_indexes: %s", e)
        raise
