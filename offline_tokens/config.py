"""Runtime configuration for token issuance and reconciliation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .utils.encoding import to_decimal


def _env_decimals(raw: Optional[str]) -> tuple[Decimal, ...]:
    if not raw:
        return ()
    return tuple(to_decimal(part) for part in raw.split(",") if part.strip())


def _env_list(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class TokenConfig:
    """Issuance, expiry and sync settings."""

    validity: timedelta = timedelta(days=30)
    denominations: tuple[Decimal, ...] = ()
    max_issue_amount: Decimal = Decimal("1000000")
    sync_concurrency: int = 1
    signing_key: Optional[str] = None
    trusted_public_keys: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.validity <= timedelta(0):
            raise ValueError("validity must be positive")
        if any(d <= 0 for d in self.denominations):
            raise ValueError("denominations must be positive")
        if self.max_issue_amount <= 0:
            raise ValueError("max_issue_amount must be positive")
        if self.sync_concurrency < 1:
            raise ValueError("sync_concurrency must be at least 1")

    @classmethod
    def from_env(cls) -> "TokenConfig":
        """Build configuration from ``OFFLINE_TOKENS_*`` environment variables."""
        return cls(
            validity=timedelta(days=int(os.getenv("OFFLINE_TOKENS_VALIDITY_DAYS", "30"))),
            denominations=_env_decimals(os.getenv("OFFLINE_TOKENS_DENOMINATIONS")),
            max_issue_amount=to_decimal(os.getenv("OFFLINE_TOKENS_MAX_ISSUE_AMOUNT", "1000000")),
            sync_concurrency=int(os.getenv("OFFLINE_TOKENS_SYNC_CONCURRENCY", "1")),
            signing_key=os.getenv("OFFLINE_TOKENS_SIGNING_KEY") or None,
            trusted_public_keys=_env_list(os.getenv("OFFLINE_TOKENS_TRUSTED_KEYS")),
        )
