# Casino error taxonomy. Engine code raises these; routers turn them into HTTP errors.


class CasinoError(Exception):
    """Base class. status_code is the HTTP status routers answer with."""
    status_code = 500
    code = "casino_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


# ----- Validation (rejected at bet placement, never reach settlement) -----
class ValidationError(CasinoError):
    status_code = 400
    code = "validation_error"


class InsufficientBalance(ValidationError):
    code = "insufficient_balance"


class RoundNotOpen(ValidationError):
    code = "round_not_open"


class InvalidSelection(ValidationError):
    code = "invalid_selection"


class InvalidStake(ValidationError):
    code = "invalid_stake"


class RateLimited(ValidationError):
    status_code = 429
    code = "rate_limited"


class NotFound(CasinoError):
    status_code = 404
    code = "not_found"


# ----- Concurrency loss: someone else is handling it -----
class SettlementInProgress(CasinoError):
    status_code = 409
    code = "settlement_in_progress"


class RoundNotReady(CasinoError):
    status_code = 409
    code = "round_not_ready"


# ----- Fatal to a resolution attempt; the lifecycle manager retries -----
class RandomnessUnavailable(CasinoError):
    status_code = 503
    code = "randomness_unavailable"


class SettlementIncomplete(CasinoError):
    """Some bets reached their accounts but not their history; the round stays locked."""
    status_code = 503
    code = "settlement_incomplete"


# ----- Logic bugs, never transient -----
class ConsistencyViolation(CasinoError):
    status_code = 500
    code = "consistency_violation"
