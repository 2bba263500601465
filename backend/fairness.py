"""
Provably fair outcome generation.

Every outcome is a pure function of a pre-committed server seed, a public
value bound late (the daily lotto for round games, the player's client seed
for coinflip) and the round nonce:

    digest_k = HMAC_SHA256(key=server_seed, msg=f"{public_seed}-{nonce}-{k}")

32-bit chunks of the digest stream are rejection-sampled so that wheels with
a non power-of-two slot count (15) stay uniform. Anyone holding the revealed
seeds can recompute the result with verify_outcome().
"""
import hashlib
import hmac
import logging
import secrets
from decimal import Decimal, ROUND_FLOOR
from typing import Iterator, Optional, Tuple

from config import (
    COINFLIP,
    COINFLIP_MULTIPLIER,
    COINFLIP_SIDES,
    CRASH,
    CRASH_HOUSE_EDGE,
    LOTTO_LENGTH,
    ROULETTE,
    WHEEL_SLOTS,
)
from errors import ConsistencyViolation, RandomnessUnavailable

logger = logging.getLogger(__name__)

_CHUNK_HEX = 8  # 32 bits
_CHUNK_SPACE = 2 ** 32
_MAX_DIGESTS = 64
_FLOAT_BITS = 52


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hmac_sha256(key: str, message: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def secure_hex(nbytes: int) -> str:
    """Hex string from the OS CSPRNG. Fails closed: never falls back to a weaker generator."""
    try:
        return secrets.token_hex(nbytes)
    except (NotImplementedError, OSError) as e:
        logger.error("Secure random source unavailable: %s", e)
        raise RandomnessUnavailable("Secure random source unavailable") from e


def secure_lotto(length: int = LOTTO_LENGTH) -> str:
    try:
        return "".join(str(secrets.randbelow(10)) for _ in range(length))
    except (NotImplementedError, OSError) as e:
        logger.error("Secure random source unavailable: %s", e)
        raise RandomnessUnavailable("Secure random source unavailable") from e


def _digests(server_seed: str, public_seed: str, nonce: int) -> Iterator[str]:
    for counter in range(_MAX_DIGESTS):
        yield hmac_sha256(server_seed, f"{public_seed}-{nonce}-{counter}")


def uniform_index(server_seed: str, public_seed: str, nonce: int, n: int) -> Tuple[int, str]:
    """Unbiased draw in [0, n). Returns (index, digest that produced it)."""
    if n <= 0:
        raise ValueError("n must be positive")
    limit = (_CHUNK_SPACE // n) * n
    for digest in _digests(server_seed, public_seed, nonce):
        for i in range(0, len(digest), _CHUNK_HEX):
            value = int(digest[i:i + _CHUNK_HEX], 16)
            if value < limit:
                return value % n, digest
    # 64 digests * 8 chunks all rejected: not a property of a working HMAC
    raise RandomnessUnavailable("Rejection sampling exhausted")


def uniform_unit(server_seed: str, public_seed: str, nonce: int) -> Tuple[Decimal, str]:
    """Uniform value in [0, 1) from the first 52 bits of the first digest."""
    digest = next(_digests(server_seed, public_seed, nonce))
    h = int(digest[:13], 16)
    return Decimal(h) / Decimal(2 ** _FLOAT_BITS), digest


def crash_point(r: Decimal, house_edge: Decimal = CRASH_HOUSE_EDGE) -> Decimal:
    """House-edge weighted crash multiplier: P(crash >= x) = (1 - edge) / x."""
    raw = (Decimal(100) * (Decimal(1) - house_edge)) / (Decimal(1) - r)
    point = raw.to_integral_value(rounding=ROUND_FLOOR) / Decimal(100)
    if point < Decimal("1.00"):
        point = Decimal("1.00")
    return point.quantize(Decimal("0.01"))


def draw(game_type: str, server_seed: str, public_seed: str, nonce: int) -> dict:
    """Game outcome descriptor (BSON friendly) plus the digest used."""
    if game_type == ROULETTE:
        index, digest = uniform_index(server_seed, public_seed, nonce, len(WHEEL_SLOTS))
        slot = WHEEL_SLOTS[index]
        return {
            "game_type": ROULETTE,
            "index": index,
            "slot": slot["slot"],
            "color": slot["color"],
            "multiplier": slot["multiplier"],
            "digest": digest,
        }
    if game_type == CRASH:
        r, digest = uniform_unit(server_seed, public_seed, nonce)
        return {"game_type": CRASH, "crash_point": str(crash_point(r)), "digest": digest}
    if game_type == COINFLIP:
        index, digest = uniform_index(server_seed, public_seed, nonce, len(COINFLIP_SIDES))
        return {
            "game_type": COINFLIP,
            "side": COINFLIP_SIDES[index],
            "multiplier": str(COINFLIP_MULTIPLIER),
            "digest": digest,
        }
    raise ValueError(f"Unknown game type: {game_type}")


class RandomnessSource:
    """resolve(round_context) -> outcome descriptor carrying its fairness proof.

    round_context keys: game_type, round_id, nonce, server_seed, server_seed_hash,
    public_seed. Missing or mismatched seed material fails closed.
    """

    def resolve(self, round_context: dict) -> dict:
        server_seed = round_context.get("server_seed")
        server_seed_hash = round_context.get("server_seed_hash")
        public_seed = round_context.get("public_seed")
        nonce = round_context.get("nonce")
        if not server_seed or not server_seed_hash or public_seed is None or nonce is None:
            raise RandomnessUnavailable(
                "Round is missing provably fair data; refusing to resolve",
                round_id=round_context.get("round_id"),
            )
        if sha256_hex(server_seed) != server_seed_hash:
            raise ConsistencyViolation(
                "Server seed does not match its published hash",
                round_id=round_context.get("round_id"),
            )
        outcome = draw(round_context["game_type"], server_seed, public_seed, int(nonce))
        outcome["proof"] = {
            "server_seed_hash": server_seed_hash,
            "public_seed_hash": sha256_hex(public_seed),
            "nonce": int(nonce),
            "formula": 'HMAC_SHA256(server_seed, "{public_seed}-{nonce}-{counter}")',
        }
        return outcome


def public_outcome(outcome: Optional[dict]) -> Optional[dict]:
    """Outcome as shown to players; the digest is only published by verification."""
    if not outcome:
        return None
    return {k: v for k, v in outcome.items() if k != "digest"}


def verify_outcome(game_type: str, server_seed: str, public_seed: str, nonce: int, outcome: dict) -> bool:
    """Recompute the draw from revealed material and compare with the stored outcome."""
    expected = draw(game_type, server_seed, public_seed, int(nonce))
    keys = [k for k in expected if k != "digest"]
    return all(str(expected[k]) == str(outcome.get(k)) for k in keys)
