"""Settlement gateway interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from ..models.token import Token


class SettlementGateway(ABC):
    """External ledger that converts redeemed tokens back into account value."""

    @abstractmethod
    async def redeem(self, tokens: Sequence[Token]) -> str:
        """Settle ``tokens`` and return the ledger's reference.

        Implementations raise :class:`~offline_tokens.errors.SettlementError`
        when the ledger refuses or fails.
        """

    async def close(self) -> None:
        """Close gateway resources if needed."""
