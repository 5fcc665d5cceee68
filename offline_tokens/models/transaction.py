"""Transaction datatypes and enums."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from ..utils.encoding import canonical_bytes, decimal_text, to_decimal
from ..utils.time import utc_now


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# failed -> pending is only used to retry a settlement.
ALLOWED_TRANSACTION_TRANSITIONS: frozenset[tuple[TransactionStatus, TransactionStatus]] = frozenset(
    {
        (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
        (TransactionStatus.PENDING, TransactionStatus.FAILED),
        (TransactionStatus.FAILED, TransactionStatus.PENDING),
    }
)


def check_transaction_transition(expected: TransactionStatus, new: TransactionStatus) -> None:
    if (expected, new) not in ALLOWED_TRANSACTION_TRANSITIONS:
        raise ValueError(f"Illegal transaction transition {expected.value} -> {new.value}")


class TransactionSource(str, Enum):
    ONLINE = "online"
    OFFLINE_SYNC = "offline_sync"


@dataclass(frozen=True)
class Transaction:
    """Server-side transaction record."""

    id: str
    sender_id: str
    amount: Decimal
    type: TransactionType
    status: TransactionStatus
    token_ids: tuple[str, ...]
    source: TransactionSource
    timestamp: datetime
    receiver_id: Optional[str] = None
    sender_signature: Optional[str] = None
    receiver_signature: Optional[str] = None
    local_id: Optional[str] = None
    change_token_id: Optional[str] = None
    settlement_reference: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "amount": decimal_text(self.amount),
            "type": self.type.value,
            "status": self.status.value,
            "token_ids": list(self.token_ids),
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
            "local_id": self.local_id,
            "change_token_id": self.change_token_id,
            "settlement_reference": self.settlement_reference,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class OfflineTransaction:
    """A transaction as recorded on a device and submitted for sync.

    Fields stay loosely typed (``amount`` may be a string, ``type`` a raw
    string) because structural validation is the processor's first step.
    """

    local_id: str
    amount: Any
    type: Any
    token_ids: tuple[str, ...] = ()
    sender_id: Optional[str] = None
    receiver_id: Optional[str] = None
    sender_signature: Optional[str] = None
    receiver_signature: Optional[str] = None
    timestamp: Optional[datetime] = None

    def signing_payload(self, sender_id: str) -> bytes:
        """Canonical bytes a sender signs on the device."""
        return transaction_payload(
            local_id=self.local_id,
            sender_id=sender_id,
            receiver_id=self.receiver_id,
            amount=to_decimal(self.amount),
            type=str(self.type.value if isinstance(self.type, Enum) else self.type),
            token_ids=self.token_ids,
            timestamp=self.timestamp,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OfflineTransaction":
        raw_ts = data.get("timestamp")
        return cls(
            local_id=str(data.get("id") or data.get("local_id") or ""),
            amount=data.get("amount"),
            type=data.get("type"),
            token_ids=_token_ids(data.get("token_ids") or data.get("tokenIds") or ()),
            sender_id=data.get("sender_id"),
            receiver_id=data.get("receiver_id"),
            sender_signature=data.get("sender_signature"),
            receiver_signature=data.get("receiver_signature"),
            timestamp=datetime.fromisoformat(raw_ts) if isinstance(raw_ts, str) else raw_ts,
        )


def _token_ids(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, (list, tuple)):
        raise TypeError(f"token_ids must be a list of ids, got {type(raw).__name__}")
    if not all(isinstance(token_id, str) and token_id for token_id in raw):
        raise TypeError("token_ids must contain non-empty strings")
    return tuple(raw)


def transaction_payload(
    *,
    local_id: str,
    sender_id: str,
    receiver_id: Optional[str],
    amount: Decimal,
    type: str,
    token_ids: tuple[str, ...],
    timestamp: Optional[datetime],
) -> bytes:
    """Encode the sender-signed transaction fields in their fixed order."""
    return canonical_bytes(
        (local_id, sender_id, receiver_id or "", amount, type, len(token_ids), *token_ids, timestamp)
    )



@dataclass(frozen=True)
class TransactionPage:
    """One page of a user's transaction history, newest first."""

    transactions: tuple[Transaction, ...]
    limit: int
    offset: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactions": [tx.to_dict() for tx in self.transactions],
            "pagination": {"limit": self.limit, "offset": self.offset, "has_more": self.has_more},
        }
