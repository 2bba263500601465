"""
Provably fair draw tests
Tests for: unbiased slot mapping, crash point formula, fail-closed randomness, verification
"""
from collections import Counter
from decimal import Decimal

import pytest

import fairness
from config import COINFLIP, CRASH, ROULETTE, WHEEL_SLOTS
from errors import ConsistencyViolation, RandomnessUnavailable
from fairness import (
    RandomnessSource,
    crash_point,
    draw,
    public_outcome,
    sha256_hex,
    uniform_index,
    verify_outcome,
)

SERVER_SEED = "a" * 64
LOTTO = "0123456789"


def _context(game_type=ROULETTE, nonce=1, **overrides):
    ctx = {
        "game_type": game_type,
        "round_id": "r1",
        "nonce": nonce,
        "server_seed": SERVER_SEED,
        "server_seed_hash": sha256_hex(SERVER_SEED),
        "public_seed": LOTTO,
    }
    ctx.update(overrides)
    return ctx


class TestUniformIndex:
    """Mapping digests onto n equiprobable outcomes"""

    def test_deterministic(self):
        """Same seeds and nonce always give the same index"""
        assert uniform_index(SERVER_SEED, LOTTO, 7, 15) == uniform_index(SERVER_SEED, LOTTO, 7, 15)

    def test_nonce_changes_result_stream(self):
        """Different nonces produce different digests"""
        _, d1 = uniform_index(SERVER_SEED, LOTTO, 1, 15)
        _, d2 = uniform_index(SERVER_SEED, LOTTO, 2, 15)
        assert d1 != d2

    def test_index_in_range(self):
        for nonce in range(200):
            index, _ = uniform_index(SERVER_SEED, LOTTO, nonce, 15)
            assert 0 <= index < 15

    def test_rejects_non_positive_n(self):
        with pytest.raises(ValueError):
            uniform_index(SERVER_SEED, LOTTO, 1, 0)

    def test_wheel_slots_uniform(self):
        """15 000 spins: every slot within 6 sigma of 1 000"""
        n = len(WHEEL_SLOTS)
        draws = 15_000
        counts = Counter(uniform_index(SERVER_SEED, LOTTO, nonce, n)[0] for nonce in range(draws))
        expected = draws / n
        sigma = (draws * (1 / n) * (1 - 1 / n)) ** 0.5
        assert set(counts) == set(range(n))
        for slot, count in counts.items():
            assert abs(count - expected) < 6 * sigma, f"slot {slot}: {count}"

    def test_coinflip_roughly_even(self):
        counts = Counter(draw(COINFLIP, SERVER_SEED, "my-client-seed", nonce)["side"] for nonce in range(4000))
        assert set(counts) == {"heads", "tails"}
        assert abs(counts["heads"] - 2000) < 6 * (4000 * 0.25) ** 0.5


class TestCrashPoint:
    """House-edge weighted crash multiplier"""

    def test_minimum_is_one(self):
        assert crash_point(Decimal(0)) == Decimal("1.00")

    def test_half(self):
        assert crash_point(Decimal("0.5")) == Decimal("1.98")

    def test_high(self):
        assert crash_point(Decimal("0.99")) == Decimal("99.00")

    def test_draw_has_two_decimals(self):
        outcome = draw(CRASH, SERVER_SEED, LOTTO, 3)
        value = Decimal(outcome["crash_point"])
        assert value >= Decimal("1.00")
        assert value == value.quantize(Decimal("0.01"))


class TestRandomnessSource:
    """resolve(round_context) contract"""

    def test_resolve_includes_proof(self):
        outcome = RandomnessSource().resolve(_context())
        assert outcome["game_type"] == ROULETTE
        assert outcome["color"] in ("red", "black", "green")
        assert outcome["proof"]["server_seed_hash"] == sha256_hex(SERVER_SEED)
        assert outcome["proof"]["nonce"] == 1
        assert "server_seed" not in outcome["proof"]

    def test_slot_matches_wheel(self):
        outcome = RandomnessSource().resolve(_context(nonce=42))
        slot = WHEEL_SLOTS[outcome["index"]]
        assert (outcome["slot"], outcome["color"]) == (slot["slot"], slot["color"])

    def test_missing_seed_fails_closed(self):
        with pytest.raises(RandomnessUnavailable):
            RandomnessSource().resolve(_context(server_seed=None))

    def test_missing_nonce_fails_closed(self):
        with pytest.raises(RandomnessUnavailable):
            RandomnessSource().resolve(_context(nonce=None))

    def test_hash_mismatch_is_consistency_violation(self):
        with pytest.raises(ConsistencyViolation):
            RandomnessSource().resolve(_context(server_seed_hash=sha256_hex("other")))

    def test_public_outcome_drops_digest(self):
        outcome = RandomnessSource().resolve(_context())
        assert "digest" not in public_outcome(outcome)
        assert public_outcome(None) is None


class TestSecureRandom:
    """CSPRNG failures never fall back to a weaker generator"""

    def test_secure_hex_length(self):
        assert len(fairness.secure_hex(32)) == 64

    def test_secure_lotto_digits(self):
        lotto = fairness.secure_lotto(10)
        assert len(lotto) == 10 and lotto.isdigit()

    def test_token_failure_raises(self, monkeypatch):
        def broken(nbytes):
            raise OSError("no entropy")
        monkeypatch.setattr(fairness.secrets, "token_hex", broken)
        with pytest.raises(RandomnessUnavailable):
            fairness.secure_hex(32)


class TestVerify:
    """Recomputing outcomes from revealed material"""

    @pytest.mark.parametrize("game_type", [ROULETTE, CRASH, COINFLIP])
    def test_own_draw_verifies(self, game_type):
        outcome = public_outcome(draw(game_type, SERVER_SEED, LOTTO, 9))
        assert verify_outcome(game_type, SERVER_SEED, LOTTO, 9, outcome)

    def test_tampered_outcome_fails(self):
        outcome = public_outcome(draw(ROULETTE, SERVER_SEED, LOTTO, 9))
        outcome["color"] = "green" if outcome["color"] != "green" else "red"
        assert not verify_outcome(ROULETTE, SERVER_SEED, LOTTO, 9, outcome)

    def test_wrong_seed_fails(self):
        """A forged server seed cannot reproduce a run of outcomes"""
        results = []
        for nonce in range(1, 21):
            outcome = public_outcome(draw(CRASH, SERVER_SEED, LOTTO, nonce))
            results.append(verify_outcome(CRASH, "b" * 64, LOTTO, nonce, outcome))
        assert not all(results)
