"""Exception hierarchy for token issuance, division and reconciliation."""

from __future__ import annotations

from typing import Optional


class OfflineTokenError(Exception):
    """Base exception for all offline token errors.

    Every subclass carries a machine-readable ``reason`` code alongside the
    human-readable message so callers can map failures without parsing text.
    """

    default_reason = "error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.reason = reason or self.default_reason


class ValidationFailure(OfflineTokenError):
    """Structurally invalid input: bad shape, non-positive amount, unknown type."""

    default_reason = "validation_failed"


class TokenStateError(OfflineTokenError):
    """Token cannot be used: not active, expired, not owned or badly signed."""

    default_reason = "token_not_active"

    def __init__(self, message: str = "", *, token_id: Optional[str] = None, reason: Optional[str] = None) -> None:
        super().__init__(message, reason=reason)
        self.token_id = token_id


class TokenNotFoundError(TokenStateError):
    """Referenced token does not exist."""

    default_reason = "token_not_found"


class ConflictError(OfflineTokenError):
    """A conditional update lost a race, or the token was already consumed."""

    default_reason = "double_spend"

    def __init__(
        self,
        message: str = "",
        *,
        token_id: Optional[str] = None,
        conflicting_transaction_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message, reason=reason)
        self.token_id = token_id
        self.conflicting_transaction_id = conflicting_transaction_id


class ConservationViolation(OfflineTokenError):
    """Division produced children whose amounts do not sum to the parent."""

    default_reason = "conservation_violation"


class PersistenceError(OfflineTokenError):
    """Storage backend failure."""

    default_reason = "persistence_error"


class SettlementError(OfflineTokenError):
    """External ledger refused or failed a redemption."""

    default_reason = "settlement_failed"

    def __init__(self, message: str = "", *, transaction_id: Optional[str] = None, reason: Optional[str] = None) -> None:
        super().__init__(message, reason=reason)
        self.transaction_id = transaction_id


__all__ = [
    "OfflineTokenError",
    "ValidationFailure",
    "TokenStateError",
    "TokenNotFoundError",
    "ConflictError",
    "ConservationViolation",
    "PersistenceError",
    "SettlementError",
]
