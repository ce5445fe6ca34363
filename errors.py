# errors.py
"""
FAIRPLAY — Errors
Domain error taxonomy. Each error carries the HTTP status main.py maps it to.
"""

from __future__ import annotations


class FairplayError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# =========================================================
# Validation (recovered locally, surfaced to the player)
# =========================================================
class ValidationError(FairplayError):
    status_code = 400
    default_message = "Invalid request"


class InvalidGameConfigError(ValidationError):
    default_message = "Game parameters out of supported range"


class UnknownGameError(ValidationError):
    status_code = 404
    default_message = "Unknown game"


class BetNotFoundError(FairplayError):
    status_code = 404
    default_message = "Bet not found"


# =========================================================
# State conflicts (seed lifecycle / nonce races)
# =========================================================
class StateConflictError(FairplayError):
    status_code = 409
    default_message = "State conflict"


class NotCommittedError(StateConflictError):
    default_message = "No active seed commitment; request one first"


class AlreadyCommittedError(StateConflictError):
    default_message = "A commitment is already active with unresolved bets"


class RoundInProgressError(StateConflictError):
    default_message = "A bet is pending under the current commitment"


class NothingToRevealError(StateConflictError):
    default_message = "Nothing to reveal"


class AlreadySettledError(StateConflictError):
    default_message = "Bet already settled"


class NonceConflictError(StateConflictError):
    default_message = "Nonce already used under this server seed"


class BettingClosedError(StateConflictError):
    default_message = "Betting is closed for this round"


# =========================================================
# Money / persistence / fatal
# =========================================================
class InsufficientFundsError(FairplayError):
    status_code = 402
    default_message = "Insufficient funds"


class PersistenceFailureError(FairplayError):
    status_code = 503
    default_message = "Storage unavailable; the bet was not recorded"


class EntropyUnavailableError(FairplayError):
    """Hash function or CSPRNG unavailable. The betting surface fails closed."""
    status_code = 503
    default_message = "Randomness source unavailable; betting is suspended"
