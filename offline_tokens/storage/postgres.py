"""Postgres-backed storage using asyncpg."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence

import asyncpg

from ..errors import PersistenceError
from ..models.token import Token, TokenStatus, check_transition
from ..models.transaction import (
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
    check_transaction_transition,
)
from .base import TokenStorage

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS offline_tokens (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    amount NUMERIC NOT NULL CHECK (amount > 0),
    issued_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    issuer_public_key TEXT NOT NULL,
    signature TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'spent', 'expired', 'redeemed')),
    parent_token_id TEXT NULL REFERENCES offline_tokens (id),
    spent_at TIMESTAMPTZ NULL,
    redeemed_at TIMESTAMPTZ NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (expires_at > issued_at)
);
CREATE INDEX IF NOT EXISTS offline_tokens_owner_status_idx ON offline_tokens (owner_id, status);

CREATE TABLE IF NOT EXISTS token_transactions (
    id TEXT PRIMARY KEY,
    local_id TEXT NULL,
    sender_id TEXT NOT NULL,
    receiver_id TEXT NULL,
    amount NUMERIC NOT NULL CHECK (amount > 0),
    type TEXT NOT NULL CHECK (type IN ('purchase', 'redemption', 'transfer')),
    status TEXT NOT NULL CHECK (status IN ('pending', 'completed', 'failed')),
    token_ids TEXT[] NOT NULL,
    source TEXT NOT NULL CHECK (source IN ('online', 'offline_sync')),
    timestamp TIMESTAMPTZ NOT NULL,
    sender_signature TEXT NULL,
    receiver_signature TEXT NULL,
    change_token_id TEXT NULL,
    settlement_reference TEXT NULL,
    error_message TEXT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ NULL
);
CREATE INDEX IF NOT EXISTS token_transactions_token_ids_idx ON token_transactions USING GIN (token_ids);
CREATE INDEX IF NOT EXISTS token_transactions_sender_idx ON token_transactions (sender_id, created_at);
CREATE INDEX IF NOT EXISTS token_transactions_receiver_idx ON token_transactions (receiver_id, created_at);
"""

INSERT_TOKEN_SQL = """
INSERT INTO offline_tokens (
    id, owner_id, amount, issued_at, expires_at, issuer_public_key,
    signature, status, parent_token_id
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""

SET_STATUSES_SQL = """
UPDATE offline_tokens
SET status = $3,
    spent_at = CASE WHEN $3 = 'spent' THEN NOW() ELSE spent_at END,
    redeemed_at = CASE WHEN $3 = 'redeemed' THEN NOW() ELSE redeemed_at END
WHERE id = ANY($1::text[]) AND status = $2
RETURNING id
"""

INSERT_TRANSACTION_SQL = """
INSERT INTO token_transactions (
    id, local_id, sender_id, receiver_id, amount, type, status, token_ids,
    source, timestamp, sender_signature, receiver_signature, change_token_id,
    settlement_reference, error_message, created_at, completed_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
"""


class _Rollback(Exception):
    """Abort the surrounding database transaction."""


def _token_from_row(row: Any) -> Token:
    return Token(
        id=row["id"],
        owner_id=row["owner_id"],
        amount=row["amount"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        issuer_public_key=row["issuer_public_key"],
        signature=row["signature"],
        status=TokenStatus(row["status"]),
        parent_token_id=row["parent_token_id"],
        spent_at=row["spent_at"],
        redeemed_at=row["redeemed_at"],
    )


def _transaction_from_row(row: Any) -> Transaction:
    return Transaction(
        id=row["id"],
        local_id=row["local_id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        amount=row["amount"],
        type=TransactionType(row["type"]),
        status=TransactionStatus(row["status"]),
        token_ids=tuple(row["token_ids"]),
        source=TransactionSource(row["source"]),
        timestamp=row["timestamp"],
        sender_signature=row["sender_signature"],
        receiver_signature=row["receiver_signature"],
        change_token_id=row["change_token_id"],
        settlement_reference=row["settlement_reference"],
        error_message=row["error_message"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def _token_args(token: Token) -> tuple:
    return (
        token.id,
        token.owner_id,
        token.amount,
        token.issued_at,
        token.expires_at,
        token.issuer_public_key,
        token.signature,
        token.status.value,
        token.parent_token_id,
    )


class PostgresStorage(TokenStorage):
    """Postgres-backed storage using asyncpg.

    Conditional updates are single ``UPDATE ... WHERE status = $expected``
    statements; multi-row transitions run inside one database transaction and
    roll back unless every row matched.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.pool: asyncpg.Pool | None = None
        self._min_size = min_size
        self._max_size = max_size

    async def connect(self) -> None:
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self._min_size, max_size=self._max_size)
            except (asyncpg.PostgresError, OSError) as exc:
                raise PersistenceError(f"Could not connect to Postgres: {exc}") from exc

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        await self.connect()
        assert self.pool is not None
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as exc:
            raise PersistenceError(str(exc), reason="duplicate_key") from exc
        except (asyncpg.PostgresError, OSError) as exc:
            raise PersistenceError(str(exc)) from exc

    async def ensure_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        async with self._acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    async def create_token(self, token: Token) -> None:
        async with self._acquire() as conn:
            await conn.execute(INSERT_TOKEN_SQL, *_token_args(token))

    async def create_tokens(self, tokens: Sequence[Token]) -> None:
        async with self._acquire() as conn:
            async with conn.transaction():
                await conn.executemany(INSERT_TOKEN_SQL, [_token_args(t) for t in tokens])

    async def get_token(self, token_id: str) -> Optional[Token]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM offline_tokens WHERE id=$1", token_id)
            return _token_from_row(row) if row else None

    async def list_tokens(self, owner_id: str, *, status: Optional[TokenStatus] = None) -> list[Token]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM offline_tokens
                WHERE owner_id=$1 AND ($2::text IS NULL OR status=$2)
                ORDER BY expires_at ASC
                """,
                owner_id,
                status.value if status else None,
            )
            return [_token_from_row(r) for r in rows]

    async def conditional_set_status(self, token_id: str, expected: TokenStatus, new: TokenStatus) -> bool:
        return await self.conditional_set_statuses([token_id], expected, new)

    async def conditional_set_statuses(
        self, token_ids: Sequence[str], expected: TokenStatus, new: TokenStatus
    ) -> bool:
        check_transition(expected, new)
        wanted = set(token_ids)
        if not wanted:
            return False
        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    rows = await conn.fetch(SET_STATUSES_SQL, list(wanted), expected.value, new.value)
                    if len(rows) != len(wanted):
                        raise _Rollback()
            except _Rollback:
                return False
            return True

    async def split_token(self, parent_id: str, children: Sequence[Token]) -> bool:
        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    rows = await conn.fetch(SET_STATUSES_SQL, [parent_id], TokenStatus.ACTIVE.value, TokenStatus.SPENT.value)
                    if len(rows) != 1:
                        raise _Rollback()
                    await conn.executemany(INSERT_TOKEN_SQL, [_token_args(c) for c in children])
            except _Rollback:
                return False
            return True

    async def create_transaction(self, transaction: Transaction) -> None:
        tx = transaction
        async with self._acquire() as conn:
            await conn.execute(
                INSERT_TRANSACTION_SQL,
                tx.id,
                tx.local_id,
                tx.sender_id,
                tx.receiver_id,
                tx.amount,
                tx.type.value,
                tx.status.value,
                list(tx.token_ids),
                tx.source.value,
                tx.timestamp,
                tx.sender_signature,
                tx.receiver_signature,
                tx.change_token_id,
                tx.settlement_reference,
                tx.error_message,
                tx.created_at,
                tx.completed_at,
            )

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM token_transactions WHERE id=$1", transaction_id)
            return _transaction_from_row(row) if row else None

    async def find_transactions_consuming_token(
        self, token_id: str, *, status: Optional[TransactionStatus] = None
    ) -> list[Transaction]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM token_transactions
                WHERE token_ids @> ARRAY[$1]::text[] AND ($2::text IS NULL OR status=$2)
                ORDER BY created_at ASC
                """,
                token_id,
                status.value if status else None,
            )
            return [_transaction_from_row(r) for r in rows]

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
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE token_transactions
                SET status = $3,
                    error_message = COALESCE($4, error_message),
                    settlement_reference = COALESCE($5, settlement_reference),
                    completed_at = CASE WHEN $3 = 'completed' THEN NOW() ELSE completed_at END
                WHERE id = $1 AND status = $2
                RETURNING id
                """,
                transaction_id,
                expected.value,
                new.value,
                error_message,
                settlement_reference,
            )
            return row is not None

    async def list_transactions_for_user(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM token_transactions
                WHERE (sender_id = $1 OR receiver_id = $1)
                  AND ($2::timestamptz IS NULL OR created_at > $2)
                ORDER BY created_at DESC
                LIMIT $3 OFFSET $4
                """,
                user_id,
                since,
                limit,
                offset,
            )
            return [_transaction_from_row(r) for r in rows]
