"""Token, transaction and sync-outcome datatypes."""

from .sync import (
    CommitResult,
    ConflictRecord,
    ConflictResolution,
    ConflictType,
    SyncBatchResult,
    SyncOutcome,
    SyncStatus,
)
from .token import (
    ALLOWED_TRANSITIONS,
    DivisionResult,
    Token,
    TokenStatus,
    ValidationResult,
    check_transition,
    token_payload,
)
from .transaction import (
    ALLOWED_TRANSACTION_TRANSITIONS,
    OfflineTransaction,
    Transaction,
    TransactionPage,
    TransactionSource,
    TransactionStatus,
    TransactionType,
    check_transaction_transition,
    transaction_payload,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ALLOWED_TRANSACTION_TRANSITIONS",
    "CommitResult",
    "ConflictRecord",
    "ConflictResolution",
    "ConflictType",
    "DivisionResult",
    "OfflineTransaction",
    "SyncBatchResult",
    "SyncOutcome",
    "SyncStatus",
    "Token",
    "TokenStatus",
    "Transaction",
    "TransactionSource",
    "TransactionStatus",
    "TransactionPage",
    "TransactionType",
    "ValidationResult",
    "check_transaction_transition",
    "check_transition",
    "token_payload",
    "transaction_payload",
]
