"""Settlement gateway port, reference ledger and redemption flow."""

from .base import SettlementGateway
from .memory import InMemorySettlementLedger
from .redeemer import TokenRedeemer

__all__ = ["InMemorySettlementLedger", "SettlementGateway", "TokenRedeemer"]
