"""Offline tokens package.

This package issues Ed25519-signed bearer tokens that can be spent while a
device is offline, and reconciles the resulting transactions when the device
synchronizes again.
"""

from .config import TokenConfig
from .errors import (
    ConflictError,
    ConservationViolation,
    OfflineTokenError,
    PersistenceError,
    SettlementError,
    TokenNotFoundError,
    TokenStateError,
    ValidationFailure,
)
from .models import OfflineTransaction, SyncBatchResult, SyncStatus, Token, TokenStatus, Transaction
from .observability import configure_structlog
from .service import OfflineTokenService

__all__ = [
    "OfflineTokenService",
    "TokenConfig",
    "configure_structlog",
    "OfflineTransaction",
    "SyncBatchResult",
    "SyncStatus",
    "Token",
    "TokenStatus",
    "Transaction",
    "OfflineTokenError",
    "ValidationFailure",
    "TokenStateError",
    "TokenNotFoundError",
    "ConflictError",
    "ConservationViolation",
    "PersistenceError",
    "SettlementError",
]
