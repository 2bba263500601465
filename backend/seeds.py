# Daily server seeds (commit-reveal) and per-player client seeds.
import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import (
    CLIENT_SEED_CHANGE_INTERVAL,
    CLIENT_SEED_MAX_LENGTH,
    CLIENT_SEED_MIN_LENGTH,
    DAILY_SEED_BYTES,
    DEFAULT_CLIENT_SEED,
    HIDDEN_UNTIL_DAY_ENDS,
    LOTTO_LENGTH,
)
from errors import InvalidSelection, NotFound, RateLimited, ValidationError
from fairness import secure_hex, secure_lotto, sha256_hex
from ledger import iso, new_id, parse_iso, utcnow

logger = logging.getLogger(__name__)

_CLIENT_SEED_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


def seed_date(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def day_has_ended(seed: dict, now: datetime) -> bool:
    return seed_date(now) > seed["date"]


class SeedVault:
    """Server seeds are generated per UTC day; only their hashes are public until the day is over."""

    def __init__(self, db, clock=utcnow):
        self.db = db
        self._clock = clock

    async def get_or_create_daily_seed(self, now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        date = seed_date(now)
        existing = await self.db.daily_seeds.find_one({"date": date}, {"_id": 0})
        if existing:
            return existing
        # Generated before the write so a CSPRNG failure never leaves a half-made seed behind
        server_seed = secure_hex(DAILY_SEED_BYTES)
        lotto = secure_lotto(LOTTO_LENGTH)
        doc = {
            "id": new_id(),
            "date": date,
            "server_seed": server_seed,
            "server_seed_hash": sha256_hex(server_seed),
            "lotto": lotto,
            "lotto_hash": sha256_hex(lotto),
            "is_revealed": False,
            "revealed_at": None,
            "created_at": iso(now),
        }
        try:
            await self.db.daily_seeds.insert_one(doc)
        except DuplicateKeyError:
            # Another worker created today's seed first
            return await self.db.daily_seeds.find_one({"date": date}, {"_id": 0})
        doc.pop("_id", None)
        logger.info("Daily seed created for %s (hash %s)", date, doc["server_seed_hash"][:16])
        return doc

    async def get_seed(self, seed_id: str) -> Optional[dict]:
        if not seed_id:
            return None
        return await self.db.daily_seeds.find_one({"id": seed_id}, {"_id": 0})

    async def reveal_expired(self, now: Optional[datetime] = None) -> int:
        """Reveal every seed whose UTC day is over. Returns how many were revealed."""
        now = now or self._clock()
        res = await self.db.daily_seeds.update_many(
            {"date": {"$lt": seed_date(now)}, "is_revealed": False},
            {"$set": {"is_revealed": True, "revealed_at": iso(now)}},
        )
        if res.modified_count:
            logger.info("Revealed %s expired daily seed(s)", res.modified_count)
        return res.modified_count

    async def seed_for_verification(self, seed_id: str, now: Optional[datetime] = None) -> dict:
        """Seed doc for verifying a round; reveals it first when its day is over."""
        now = now or self._clock()
        seed = await self.get_seed(seed_id)
        if not seed:
            raise NotFound("Daily seed not found")
        if not seed.get("is_revealed") and day_has_ended(seed, now):
            seed = await self.db.daily_seeds.find_one_and_update(
                {"id": seed_id},
                {"$set": {"is_revealed": True, "revealed_at": iso(now)}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        return seed

    async def today_public(self, now: Optional[datetime] = None) -> dict:
        return public_seed_view(await self.get_or_create_daily_seed(now))

    # ----- Client seeds -----
    async def get_client_seed(self, account_id: str) -> str:
        doc = await self.db.client_seeds.find_one({"account_id": account_id, "is_active": True}, {"_id": 0, "client_seed": 1})
        return doc["client_seed"] if doc else DEFAULT_CLIENT_SEED

    async def set_client_seed(self, account_id: str, client_seed: str, has_unresolved_bet: bool,
                              now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        client_seed = (client_seed or "").strip()
        if not (CLIENT_SEED_MIN_LENGTH <= len(client_seed) <= CLIENT_SEED_MAX_LENGTH):
            raise InvalidSelection(
                f"Client seed must be {CLIENT_SEED_MIN_LENGTH}-{CLIENT_SEED_MAX_LENGTH} characters"
            )
        if not _CLIENT_SEED_RE.match(client_seed):
            raise InvalidSelection("Client seed may only contain letters, digits, '-' and '_'")
        if has_unresolved_bet:
            raise ValidationError("Cannot change client seed while you have an active bet")
        current = await self.db.client_seeds.find_one({"account_id": account_id, "is_active": True}, {"_id": 0})
        if current:
            changed_at = parse_iso(current["created_at"])
            if now - changed_at < timedelta(seconds=CLIENT_SEED_CHANGE_INTERVAL):
                raise RateLimited(f"Client seed can only be changed once every {CLIENT_SEED_CHANGE_INTERVAL} seconds")
            if current["client_seed"] == client_seed:
                return current
        await self.db.client_seeds.update_many(
            {"account_id": account_id, "is_active": True},
            {"$set": {"is_active": False, "replaced_at": iso(now)}},
        )
        doc = {
            "id": new_id(),
            "account_id": account_id,
            "client_seed": client_seed,
            "is_active": True,
            "created_at": iso(now),
        }
        await self.db.client_seeds.insert_one(doc)
        doc.pop("_id", None)
        return doc


def public_seed_view(seed: dict) -> dict:
    """Seed as shown to players: hashes always, secrets only once revealed."""
    revealed = bool(seed.get("is_revealed"))
    return {
        "id": seed["id"],
        "date": seed["date"],
        "server_seed_hash": seed["server_seed_hash"],
        "lotto_hash": seed["lotto_hash"],
        "server_seed": seed["server_seed"] if revealed else HIDDEN_UNTIL_DAY_ENDS,
        "lotto": seed["lotto"] if revealed else HIDDEN_UNTIL_DAY_ENDS,
        "is_revealed": revealed,
        "revealed_at": seed.get("revealed_at"),
    }
