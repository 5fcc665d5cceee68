"""In-memory settlement ledger for development and tests."""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence
from uuid import uuid4

from ..errors import SettlementError
from ..models.token import Token
from ..utils.encoding import total_amount
from .base import SettlementGateway


class InMemorySettlementLedger(SettlementGateway):
    """Records settlements; fails the next ``fail_next`` calls on request."""

    def __init__(self, *, fail_next: int = 0) -> None:
        self.fail_next = fail_next
        self.settlements: dict[str, tuple[str, ...]] = {}
        self.balances: dict[str, Decimal] = {}

    async def redeem(self, tokens: Sequence[Token]) -> str:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SettlementError("Ledger unavailable", reason="ledger_unavailable")
        reference = f"settle_{uuid4().hex}"
        self.settlements[reference] = tuple(t.id for t in tokens)
        for token in tokens:
            self.balances[token.owner_id] = total_amount([self.balances.get(token.owner_id, Decimal("0")), token.amount])
        return reference
