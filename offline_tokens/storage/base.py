"""Abstract storage port for tokens and transactions.

Conditional ("compare-and-swap") updates are the only way a token or
transaction status changes. Each returns ``False`` immediately when the
current status does not match; callers surface that as a conflict.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from ..models.token import Token, TokenStatus
from ..models.transaction import Transaction, TransactionStatus


class TokenStorage(ABC):
    """Abstract storage backend for token and transaction records."""

    @abstractmethod
    async def create_token(self, token: Token) -> None:
        """Persist one new token."""

    @abstractmethod
    async def create_tokens(self, tokens: Sequence[Token]) -> None:
        """Persist several new tokens atomically: all rows or none."""

    @abstractmethod
    async def get_token(self, token_id: str) -> Optional[Token]:
        """Fetch a token by ID."""

    @abstractmethod
    async def list_tokens(self, owner_id: str, *, status: Optional[TokenStatus] = None) -> list[Token]:
        """List an owner's tokens, optionally filtered by status."""

    @abstractmethod
    async def conditional_set_status(self, token_id: str, expected: TokenStatus, new: TokenStatus) -> bool:
        """Set ``new`` only if the token is currently ``expected``."""

    @abstractmethod
    async def conditional_set_statuses(
        self, token_ids: Sequence[str], expected: TokenStatus, new: TokenStatus
    ) -> bool:
        """Move every token ``expected -> new`` or none of them."""

    async def consume_tokens(self, token_ids: Sequence[str]) -> bool:
        """Spend every listed token, or none if any is no longer active."""
        return await self.conditional_set_statuses(token_ids, TokenStatus.ACTIVE, TokenStatus.SPENT)

    @abstractmethod
    async def split_token(self, parent_id: str, children: Sequence[Token]) -> bool:
        """Mark the parent ``active -> spent`` and insert children in one unit.

        Returns ``False`` without inserting anything when the parent is no
        longer active.
        """

    @abstractmethod
    async def create_transaction(self, transaction: Transaction) -> None:
        """Persist a transaction row."""

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Fetch a transaction by ID."""

    @abstractmethod
    async def find_transactions_consuming_token(
        self, token_id: str, *, status: Optional[TransactionStatus] = None
    ) -> list[Transaction]:
        """Indexed lookup of transactions listing ``token_id`` as an input."""

    @abstractmethod
    async def conditional_set_transaction_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        *,
        error_message: Optional[str] = None,
        settlement_reference: Optional[str] = None,
    ) -> bool:
        """Set ``new`` only if the transaction is currently ``expected``."""

    @abstractmethod
    async def list_transactions_for_user(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        """Transactions where the user is sender or receiver, newest first."""

    async def close(self) -> None:
        """Release backend resources if needed."""
