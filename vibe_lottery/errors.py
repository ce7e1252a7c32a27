"""Closed error vocabulary shared by every core operation.

Core operations return a ``CoreError`` instead of raising. The HTTP boundary
translates ``ErrorKind`` to a status code through ``HTTP_STATUS`` and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    UNAUTHORIZED = "unauthorized"
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    LIMIT_EXCEEDED = "limit_exceeded"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    INTERNAL = "internal"


# Error code → kind. Codes are what clients branch on; kinds drive status.
ERROR_CODES: dict[str, ErrorKind] = {
    "unauthorized": ErrorKind.UNAUTHORIZED,
    "invalid_bet": ErrorKind.INVALID_INPUT,
    "invalid_bets": ErrorKind.INVALID_INPUT,
    "invalid_color": ErrorKind.INVALID_INPUT,
    "invalid_guess": ErrorKind.INVALID_INPUT,
    "invalid_amount": ErrorKind.INVALID_INPUT,
    "invalid_evidence": ErrorKind.INVALID_INPUT,
    "invalid_week": ErrorKind.INVALID_INPUT,
    "insufficient_evidence": ErrorKind.INVALID_INPUT,
    "evidence_too_large": ErrorKind.INVALID_INPUT,
    "insufficient_chips": ErrorKind.INSUFFICIENT_FUNDS,
    "bet_too_high": ErrorKind.LIMIT_EXCEEDED,
    "amount_too_high": ErrorKind.LIMIT_EXCEEDED,
    "cap_reached": ErrorKind.LIMIT_EXCEEDED,
    "exceeds_cap": ErrorKind.LIMIT_EXCEEDED,
    "active_session_exists": ErrorKind.CONFLICT,
    "booster_active": ErrorKind.CONFLICT,
    "no_active_session": ErrorKind.NOT_FOUND,
    "internal": ErrorKind.INTERNAL,
}


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 400,
    ErrorKind.LIMIT_EXCEEDED: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INTERNAL: 500,
}


@dataclass(frozen=True)
class CoreError:
    """A rejected operation. The ledger is unchanged when one is returned."""

    kind: ErrorKind
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


def core_error(code: str, message: str, **details: Any) -> CoreError:
    """Build a CoreError whose kind is looked up from its code."""
    return CoreError(
        kind=ERROR_CODES.get(code, ErrorKind.INTERNAL),
        code=code,
        message=message,
        details=details,
    )


def from_ledger(result: dict[str, Any]) -> CoreError:
    """Translate a ledger ``{"error": code, ...}`` reply into a CoreError."""
    code = result["error"]
    details = {k: v for k, v in result.items() if k != "error"}
    if code == "insufficient_chips":
        message = (
            f"Not enough chips. You have {details.get('have', 0)}, "
            f"need {details.get('need', 0)}."
        )
    elif code == "active_session_exists":
        message = "You already have an active blackjack game."
    elif code == "no_active_session":
        message = "No active blackjack session."
    elif code == "booster_active":
        message = f"Booster is already active until {details.get('expires_at')}."
    elif code == "cap_reached":
        message = "Market conversion cap reached. Please wait for more organic ad views."
    elif code == "exceeds_cap":
        message = (
            "Amount exceeds remaining cap. You can convert at most "
            f"{details.get('remaining_cap', 0)} chips."
        )
    else:
        message = "Internal error."
    return core_error(code, message, **details)
