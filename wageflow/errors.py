"""
errors.py - Engine exception hierarchy.

Every error carries a stable ``code``, a ``kind`` and an HTTP status.
The kind tells the caller what to do next:

    validation / conflict  -> not allowed (re-query state, fix input)
    unavailable            -> try again (external ledger slow or down)
    invariant              -> contact support (programmer error, never corrected)
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"
    INVARIANT = "invariant"


CALLER_ACTIONS = {
    ErrorKind.VALIDATION: "not_allowed",
    ErrorKind.CONFLICT: "not_allowed",
    ErrorKind.UNAVAILABLE: "try_again",
    ErrorKind.INVARIANT: "contact_support",
}


class WageflowError(Exception):
    """Base exception for all engine errors."""

    code = "error"
    kind = ErrorKind.VALIDATION
    status_code = 400

    def __init__(self, message: str = "", details: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    @property
    def action(self) -> str:
        return CALLER_ACTIONS[self.kind]

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "action": self.action,
            "details": self.details,
        }

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class InvalidInput(WageflowError):
    code = "INVALID_INPUT"


class NotAuthorized(WageflowError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class ChannelNotFound(WageflowError):
    code = "CHANNEL_NOT_FOUND"
    status_code = 404


class SessionNotFound(WageflowError):
    code = "SESSION_NOT_FOUND"
    status_code = 404


class ClosureRequestNotFound(WageflowError):
    code = "REQUEST_NOT_FOUND"
    status_code = 404


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------

class StateConflict(WageflowError):
    code = "STATE_CONFLICT"
    kind = ErrorKind.CONFLICT
    status_code = 409


class ChannelNotActive(StateConflict):
    code = "CHANNEL_NOT_ACTIVE"


class SessionAlreadyOpen(StateConflict):
    code = "SESSION_ALREADY_OPEN"


class SessionNotOpen(StateConflict):
    code = "SESSION_NOT_OPEN"


class InsufficientEscrow(StateConflict):
    code = "INSUFFICIENT_ESCROW"


class DailyLimitExceeded(StateConflict):
    code = "DAILY_LIMIT_EXCEEDED"


class ChannelAlreadyClosing(StateConflict):
    code = "CHANNEL_ALREADY_CLOSING"


class ChannelAlreadyClosed(StateConflict):
    code = "CHANNEL_ALREADY_CLOSED"


class ChannelNotExpired(StateConflict):
    code = "CHANNEL_NOT_EXPIRED"


class ClosureRequestAlreadyPending(StateConflict):
    code = "REQUEST_ALREADY_EXISTS"


class ClosureRequestNotPending(StateConflict):
    code = "REQUEST_NOT_PENDING"


class InvalidTransition(StateConflict):
    code = "INVALID_TRANSITION"


class ChannelNotConfirmed(StateConflict):
    code = "CHANNEL_NOT_CONFIRMED"


class SettlementRejected(StateConflict):
    """The ledger refused the settlement before applying it."""

    code = "SETTLEMENT_REJECTED"


# ---------------------------------------------------------------------------
# External unavailability
# ---------------------------------------------------------------------------

class LedgerUnavailable(WageflowError):
    code = "LEDGER_UNAVAILABLE"
    kind = ErrorKind.UNAVAILABLE
    status_code = 503


# ---------------------------------------------------------------------------
# Invariant violations
# ---------------------------------------------------------------------------

class InvariantViolation(WageflowError):
    code = "INVARIANT_VIOLATION"
    kind = ErrorKind.INVARIANT
    status_code = 500
