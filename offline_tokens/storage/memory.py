"""In-memory storage backend.

Method bodies never await between reading and writing a status, so every
conditional update runs atomically on the event loop.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from ..errors import PersistenceError
from ..models.token import Token, TokenStatus, check_transition
from ..models.transaction import Transaction, TransactionStatus, check_transaction_transition
from ..utils.time import utc_now
from .base import TokenStorage


def _stamp(token: Token, new: TokenStatus) -> Token:
    now = utc_now()
    if new == TokenStatus.SPENT:
        return replace(token, status=new, spent_at=now)
    if new == TokenStatus.REDEEMED:
        return replace(token, status=new, redeemed_at=now)
    return replace(token, status=new)


class InMemoryStorage(TokenStorage):
    """Dict-backed storage with a token -> transaction index."""

    def __init__(self) -> None:
        self.tokens: dict[str, Token] = {}
        self.transactions: dict[str, Transaction] = {}
        self._consumers: dict[str, list[str]] = {}

    async def create_token(self, token: Token) -> None:
        await self.create_tokens([token])

    async def create_tokens(self, tokens: Sequence[Token]) -> None:
        ids = [t.id for t in tokens]
        if len(set(ids)) != len(ids) or any(i in self.tokens for i in ids):
            raise PersistenceError("Duplicate token id", reason="duplicate_key")
        for token in tokens:
            self.tokens[token.id] = token

    async def get_token(self, token_id: str) -> Optional[Token]:
        return self.tokens.get(token_id)

    async def list_tokens(self, owner_id: str, *, status: Optional[TokenStatus] = None) -> list[Token]:
        found = [t for t in self.tokens.values() if t.owner_id == owner_id and (status is None or t.status == status)]
        return sorted(found, key=lambda t: t.expires_at)

    async def conditional_set_status(self, token_id: str, expected: TokenStatus, new: TokenStatus) -> bool:
        return await self.conditional_set_statuses([token_id], expected, new)

    async def conditional_set_statuses(
        self, token_ids: Sequence[str], expected: TokenStatus, new: TokenStatus
    ) -> bool:
        check_transition(expected, new)
        current = [self.tokens[token_id] for token_id in token_ids if token_id in self.tokens]
        if not current or len(current) != len(token_ids) or any(t.status != expected for t in current):
            return False
        for token in current:
            self.tokens[token.id] = _stamp(token, new)
        return True

    async def split_token(self, parent_id: str, children: Sequence[Token]) -> bool:
        parent = self.tokens.get(parent_id)
        if parent is None or parent.status != TokenStatus.ACTIVE:
            return False
        if any(c.id in self.tokens for c in children):
            raise PersistenceError("Duplicate token id", reason="duplicate_key")
        self.tokens[parent_id] = _stamp(parent, TokenStatus.SPENT)
        for child in children:
            self.tokens[child.id] = child
        return True

    async def create_transaction(self, transaction: Transaction) -> None:
        if transaction.id in self.transactions:
            raise PersistenceError("Duplicate transaction id", reason="duplicate_key")
        self.transactions[transaction.id] = transaction
        for token_id in transaction.token_ids:
            self._consumers.setdefault(token_id, []).append(transaction.id)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.transactions.get(transaction_id)

    async def find_transactions_consuming_token(
        self, token_id: str, *, status: Optional[TransactionStatus] = None
    ) -> list[Transaction]:
        found = [self.transactions[tx_id] for tx_id in self._consumers.get(token_id, [])]
        return [tx for tx in found if status is None or tx.status == status]

    async def conditional_set_transaction_status(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        new: TransactionStatus,
        *,
        error_message: Optional[str] = None,
        settlement_reference: Optional[str] = None,
    ) -> bool:
        check_transaction_transition(expected, new)
        tx = self.transactions.get(transaction_id)
        if tx is None or tx.status != expected:
            return False
        self.transactions[transaction_id] = replace(
            tx,
            status=new,
            error_message=error_message if error_message is not None else tx.error_message,
            settlement_reference=settlement_reference or tx.settlement_reference,
            completed_at=utc_now() if new == TransactionStatus.COMPLETED else tx.completed_at,
        )
        return True

    async def list_transactions_for_user(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        found = [
            tx
            for tx in self.transactions.values()
            if user_id in (tx.sender_id, tx.receiver_id) and (since is None or tx.created_at > since)
        ]
        found.sort(key=lambda tx: tx.created_at, reverse=True)
        return found[offset : offset + limit]
