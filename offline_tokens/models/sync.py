"""Sync outcome and conflict datatypes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .token import Token
from .transaction import Transaction


class SyncStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CONFLICT = "conflict"


class ConflictType(str, Enum):
    DOUBLE_SPEND = "double_spend"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED_TOKEN = "expired_token"
    INSUFFICIENT_BALANCE = "insufficient_balance"


class ConflictResolution(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class ConflictRecord:
    """Why a synced transaction lost, and how the conflict was resolved."""

    local_id: str
    conflict_type: ConflictType
    resolution: ConflictResolution
    conflicting_transaction_ref: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "conflict_type": self.conflict_type.value,
            "resolution": self.resolution.value,
            "conflicting_transaction_ref": self.conflicting_transaction_ref,
        }


@dataclass(frozen=True)
class SyncOutcome:
    """Per-transaction result of a sync batch."""

    local_id: str
    status: SyncStatus
    server_transaction_id: Optional[str] = None
    reason: Optional[str] = None
    conflict: Optional[ConflictRecord] = None
    change_token: Optional[Token] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "status": self.status.value,
            "server_transaction_id": self.server_transaction_id,
            "reason": self.reason,
            "conflict": self.conflict.to_dict() if self.conflict else None,
            "change_token": self.change_token.to_dict() if self.change_token else None,
        }


@dataclass(frozen=True)
class SyncBatchResult:
    """Outcomes of one batch, in submission order."""

    batch_id: str
    outcomes: tuple[SyncOutcome, ...]

    @property
    def conflicts(self) -> list[ConflictRecord]:
        return [o.conflict for o in self.outcomes if o.conflict is not None]

    def count(self, status: SyncStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "processed_transactions": [o.to_dict() for o in self.outcomes],
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass(frozen=True)
class CommitResult:
    """A committed transaction and the change token minted for it, if any."""

    transaction: Transaction
    change_token: Optional[Token] = None
