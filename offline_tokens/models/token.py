"""Token datatypes and enums."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..utils.encoding import canonical_bytes, decimal_text, to_decimal


class TokenStatus(str, Enum):
    """Token lifecycle state. Everything except ACTIVE is terminal."""

    ACTIVE = "active"
    SPENT = "spent"
    EXPIRED = "expired"
    REDEEMED = "redeemed"


# Transitions storage adapters accept through conditional updates.
ALLOWED_TRANSITIONS: frozenset[tuple[TokenStatus, TokenStatus]] = frozenset(
    {
        (TokenStatus.ACTIVE, TokenStatus.SPENT),
        (TokenStatus.ACTIVE, TokenStatus.EXPIRED),
        (TokenStatus.SPENT, TokenStatus.REDEEMED),
    }
)


def check_transition(expected: TokenStatus, new: TokenStatus) -> None:
    """Raise ``ValueError`` for a lifecycle transition that is never legal."""
    if (expected, new) not in ALLOWED_TRANSITIONS:
        raise ValueError(f"Illegal token transition {expected.value} -> {new.value}")


@dataclass(frozen=True)
class Token:
    """A signed, amount-bearing bearer record, usable once as an input."""

    id: str
    owner_id: str
    amount: Decimal
    issued_at: datetime
    expires_at: datetime
    issuer_public_key: str
    signature: str
    status: TokenStatus = TokenStatus.ACTIVE
    parent_token_id: Optional[str] = None
    spent_at: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None

    def signing_payload(self) -> bytes:
        """Canonical bytes covered by the issuer signature."""
        return token_payload(
            token_id=self.id,
            owner_id=self.owner_id,
            amount=self.amount,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize for transport to clients."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "amount": decimal_text(self.amount),
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "issuer_public_key": self.issuer_public_key,
            "signature": self.signature,
            "status": self.status.value,
            "parent_token_id": self.parent_token_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Token":
        """Rebuild a token presented by a client."""
        return cls(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            amount=to_decimal(data["amount"]),
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            issuer_public_key=str(data["issuer_public_key"]),
            signature=str(data["signature"]),
            status=TokenStatus(data.get("status", TokenStatus.ACTIVE.value)),
            parent_token_id=data.get("parent_token_id"),
        )


def token_payload(
    *,
    token_id: str,
    owner_id: str,
    amount: Decimal,
    issued_at: datetime,
    expires_at: datetime,
) -> bytes:
    """Encode the signed token fields in their fixed order."""
    return canonical_bytes((token_id, owner_id, amount, issued_at, expires_at))


@dataclass(frozen=True)
class ValidationResult:
    """Four independent spendability checks for one token."""

    token_id: str
    signature_valid: bool
    not_expired: bool
    not_spent: bool
    ownership_valid: bool
    status: Optional[TokenStatus] = None

    @property
    def valid(self) -> bool:
        return self.signature_valid and self.not_expired and self.not_spent and self.ownership_valid

    @property
    def failure_reason(self) -> Optional[str]:
        """First failing check as a reason code, or ``None`` when spendable."""
        if not self.signature_valid:
            return "invalid_signature"
        if not self.ownership_valid:
            return "token_not_owned"
        if not self.not_spent:
            return "token_not_active"
        if not self.not_expired:
            return "expired_token"
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token_id": self.token_id,
            "valid": self.valid,
            "signature_valid": self.signature_valid,
            "not_expired": self.not_expired,
            "not_spent": self.not_spent,
            "ownership_valid": self.ownership_valid,
        }


@dataclass(frozen=True)
class DivisionResult:
    """Outcome of splitting one token into payment and optional change."""

    original: Token
    payment_token: Token
    change_token: Optional[Token] = None

    @property
    def children(self) -> list[Token]:
        return [self.payment_token] if self.change_token is None else [self.payment_token, self.change_token]

    @property
    def change_amount(self) -> Decimal:
        return self.change_token.amount if self.change_token is not None else Decimal("0")
