from __future__ import annotations

from typing import Any


class MarketError(Exception):
    """Base class for every rejected marketplace operation.

    Errors are local and synchronous; the core never retries. ``details`` carries
    machine-readable context (current status, balance, ...) for the caller.
    """

    code = "market_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = dict(self.details)
        return out


class NotFound(MarketError):
    code = "not_found"


class Forbidden(MarketError):
    code = "forbidden"


class InvalidState(MarketError):
    code = "invalid_state"


class InvalidInput(MarketError):
    code = "invalid_input"


class InsufficientCredits(MarketError):
    code = "insufficient_credits"


class Conflict(MarketError):
    code = "conflict"
