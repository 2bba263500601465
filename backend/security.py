# Anti-cheat and security monitoring: flags, Telegram alerts, per-user rate limiting.
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional, Tuple
import asyncio
import logging
import os
import re
import time

import httpx

from cache import TTLCache

logger = logging.getLogger(__name__)

# Telegram configuration
TELEGRAM_BOT_TOKEN = os.environ.get('TELEGRAM_BOT_TOKEN', '')
TELEGRAM_CHAT_ID = os.environ.get('TELEGRAM_CHAT_ID', '')
TELEGRAM_ENABLED = bool(TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID)

# Exploit detection (not gameplay limits)
DETECT_NEGATIVE_BALANCE = True  # Should never happen: every debit is guarded
DETECT_IMPOSSIBLE_GAIN_CENTS = 1_000_000_000  # $10M+ from a single bet = exploit

# Security flags database structure:
# db.security_flags: {
#   id, user_id, username, flag_type, reason, details (dict), created_at, resolved (bool)
# }

# Telegram notification queue (async batch sending)
pending_alerts = []


async def send_telegram_alert(message: str, alert_type: str = "warning"):
    """Queue an alert for Telegram. Only logged when Telegram is not configured."""
    if not TELEGRAM_ENABLED:
        logger.info(f"[SECURITY {alert_type.upper()}] {message}")
        return

    emoji = {
        "critical": "🚨",
        "warning": "⚠️",
        "info": "ℹ️",
        "exploit": "💀",
    }.get(alert_type, "⚠️")

    formatted = f"{emoji} **{alert_type.upper()}**\n\n{message}\n\n🕐 {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}"
    pending_alerts.append(formatted)


async def flush_telegram_alerts():
    """Send pending alerts to Telegram in one batch (up to 10)."""
    if not pending_alerts or not TELEGRAM_ENABLED:
        return

    batch = pending_alerts[:10]
    del pending_alerts[:len(batch)]
    combined_message = "\n\n---\n\n".join(batch)

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            await client.post(
                f"https://api.telegram.org/bot{TELEGRAM_BOT_TOKEN}/sendMessage",
                json={
                    "chat_id": TELEGRAM_CHAT_ID,
                    "text": combined_message[:4000],  # Telegram limit
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.exception(f"Failed to send Telegram alert: {e}")


async def flag_user_suspicious(db, user_id: str, username: str, flag_type: str, reason: str, details: Dict = None):
    """Flag an account for suspicious activity. Stored in db.security_flags."""
    try:
        now = datetime.now(timezone.utc)
        await db.security_flags.insert_one({
            "id": f"{user_id}_{flag_type}_{now.timestamp()}",
            "user_id": user_id,
            "username": username,
            "flag_type": flag_type,  # bet_rate_limit, endpoint_rate_limit, exploit_attempt, ...
            "reason": reason,
            "details": details or {},
            "created_at": now.isoformat(),
            "resolved": False,
        })

        if flag_type.startswith("exploit"):
            msg = f"**User:** {username} (ID: {user_id[:8]}...)\n**Type:** {flag_type}\n**Reason:** {reason}"
            if details:
                msg += f"\n**Details:** {str(details)[:200]}"
            await send_telegram_alert(msg, "exploit")
            await flush_telegram_alerts()  # Send immediately
        else:
            await send_telegram_alert(f"**User:** {username}\n**Type:** {flag_type}\n**Reason:** {reason}", "warning")
    except Exception as e:
        # Flagging must never break the request that triggered it
        logger.exception(f"Failed to flag user {username}: {e}")


async def check_negative_balance(db, user_id: str, username: str) -> bool:
    """Flag an account whose balance went below zero. Returns True when flagged."""
    if not DETECT_NEGATIVE_BALANCE:
        return False
    account = await db.accounts.find_one({"id": user_id}, {"_id": 0, "balance_cents": 1})
    if account and (account.get("balance_cents") or 0) < 0:
        await flag_user_suspicious(
            db, user_id, username,
            "exploit_negative_balance",
            f"EXPLOIT: Negative balance {account['balance_cents']} cents",
            {"balance_cents": account["balance_cents"]},
        )
        return True
    return False


async def check_impossible_gain(db, user_id: str, username: str, gain_cents: int, source: str = "unknown") -> bool:
    if gain_cents > DETECT_IMPOSSIBLE_GAIN_CENTS:
        await flag_user_suspicious(
            db, user_id, username,
            "exploit_impossible_gain",
            f"EXPLOIT: Gain of {gain_cents} cents from {source}",
            {"gain_cents": gain_cents, "source": source},
        )
        return True
    return False


# Background task to flush alerts periodically
async def security_monitor_task(db):
    """Flush Telegram alerts every 30 seconds."""
    while True:
        try:
            await asyncio.sleep(30)
            await flush_telegram_alerts()
        except Exception as e:
            logger.exception(f"Security monitor task error: {e}")


def sanitize_username(username: str) -> str:
    """Only alphanumeric, underscore, hyphen; at most 30 characters."""
    if not username:
        return ""
    return re.sub(r'[^a-zA-Z0-9_\-]', '', username)[:30]


# ====== CONFIGURABLE RATE LIMITING PER ENDPOINT ======

# endpoint_pattern -> (max_requests_per_minute, enabled). Patterns ending in "/" match by prefix.
RATE_LIMIT_CONFIG = {
    # Money movement
    "/api/account/tip": (10, True),
    "/api/account/rewards/": (20, True),

    # Betting (bets also have the per-second limiter below)
    "/api/casino/": (120, True),

    # Provably fair
    "/api/casino/client-seed": (10, True),

    # Admin endpoints (no rate limit)
    "/api/admin/": (1000, False),

    # Auth
    "/api/auth/login": (20, True),
    "/api/auth/register": (10, True),
    "/api/auth/me": (120, False),

    # Read-only
    "/api/feed": (120, False),
}

# Paths that place a bet: one bet per account per MIN_BET_INTERVAL_SECONDS
BET_PATH_RE = re.compile(r"^/api/casino/(?:[a-z]+/bet|coinflip/flip|coinflip/streak(?:/continue)?|rpc)$")


def get_rate_limit_for_path(path: str) -> Tuple[int, bool]:
    """(max_requests_per_minute, enabled) for a path. Exact matches win over prefixes."""
    exact = RATE_LIMIT_CONFIG.get(path)
    if exact:
        return exact
    best = None
    for pattern, cfg in RATE_LIMIT_CONFIG.items():
        if pattern.endswith("/") and path.startswith(pattern):
            if best is None or len(pattern) > len(best[0]):
                best = (pattern, cfg)
    if best:
        return best[1]
    return (60, False)


class EndpointRateLimiter:
    """Sliding one-minute window per (path, user). State lives on the instance."""

    WINDOW_SECONDS = 60

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits: Dict[str, list] = {}
        self._last_sweep = clock()

    def hit(self, path: str, user_id: str) -> Tuple[bool, int, int]:
        """Record a request. Returns (blocked, count, limit)."""
        max_rpm, enabled = get_rate_limit_for_path(path)
        if not enabled:
            return False, 0, max_rpm
        now = self._clock()
        if now - self._last_sweep >= self.WINDOW_SECONDS:
            self._sweep(now)
        key = f"{path}|{user_id}"
        hits = [ts for ts in self._hits.get(key, []) if now - ts < self.WINDOW_SECONDS]
        hits.append(now)
        self._hits[key] = hits
        return len(hits) > max_rpm, len(hits), max_rpm

    def _sweep(self, now: float) -> None:
        """Drop (path, user) keys with no hit inside the window."""
        for key in [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= self.WINDOW_SECONDS]:
            del self._hits[key]
        self._last_sweep = now

    def tracked_keys(self) -> int:
        return len(self._hits)


class BetRateLimiter:
    """At most one bet per account per interval, backed by a TTL cache."""

    def __init__(self, interval_seconds: float, clock=time.monotonic, max_entries: int = 100_000):
        self.interval_seconds = interval_seconds
        self._recent = TTLCache(interval_seconds, max_entries, clock)

    def allow(self, account_id: str) -> bool:
        if self.interval_seconds <= 0:
            return True
        if account_id in self._recent:
            return False
        if not self._recent.set(account_id, True):
            # Cannot remember this bet, so cannot enforce the interval: block
            logger.warning("Bet rate limiter full (%s live entries); rejecting bet", len(self._recent))
            return False
        return True


async def get_security_summary(db, limit: int = 100, flag_type: Optional[str] = None) -> dict:
    """Recent security flags for the admin dashboard."""
    query = {}
    if flag_type:
        query["flag_type"] = flag_type
    flags = await db.security_flags.find(query, {"_id": 0}).sort("created_at", -1).limit(limit).to_list(limit)

    type_counts = {}
    user_flags = {}
    for flag in flags:
        ftype = flag.get("flag_type", "unknown")
        type_counts[ftype] = type_counts.get(ftype, 0) + 1
        uid = flag.get("user_id")
        if uid:
            entry = user_flags.setdefault(uid, {"user_id": uid, "username": flag.get("username"), "flag_count": 0, "flag_types": set()})
            entry["flag_count"] += 1
            entry["flag_types"].add(ftype)

    top_offenders = sorted(
        [{**u, "flag_types": sorted(u["flag_types"])} for u in user_flags.values()],
        key=lambda x: x["flag_count"],
        reverse=True,
    )[:10]

    return {
        "total_flags": len(flags),
        "unique_users_flagged": len(user_flags),
        "by_type": type_counts,
        "top_offenders": top_offenders,
        "recent_flags": flags,
        "telegram_enabled": TELEGRAM_ENABLED,
        "rate_limit_config": {path: {"limit": lim, "enabled": enabled} for path, (lim, enabled) in RATE_LIMIT_CONFIG.items()},
    }


async def clear_old_security_flags(db, days: int = 30) -> int:
    """Delete security flags older than days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.security_flags.delete_many({"created_at": {"$lt": cutoff.isoformat()}})
    return result.deleted_count
