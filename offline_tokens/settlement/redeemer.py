"""Redemption of tokens against the external settlement ledger."""

from __future__ import annotations

from typing import Sequence
from uuid import uuid4

import structlog

from ..errors import (
    ConflictError,
    PersistenceError,
    SettlementError,
    TokenNotFoundError,
    TokenStateError,
    ValidationFailure,
)
from ..models.token import Token, TokenStatus
from ..models.transaction import Transaction, TransactionSource, TransactionStatus, TransactionType
from ..storage.base import TokenStorage
from ..token.validator import TokenValidator
from ..utils.encoding import decimal_text, total_amount
from ..utils.time import Clock, utc_now
from .base import SettlementGateway

log = structlog.get_logger(__name__)

CONSUMED_CONCURRENTLY = "token_already_consumed"


class TokenRedeemer:
    """Spend tokens into a redemption transaction, then settle it.

    The transaction is written ``pending`` before any token moves, so a
    storage failure there leaves every token ``active``. Tokens then move
    ``active -> spent`` before the ledger is called, and only a successful
    settlement moves them on to ``redeemed``. A failed settlement leaves the
    transaction ``failed`` and the tokens ``spent`` until
    :meth:`retry_redemption` succeeds.
    """

    def __init__(
        self,
        *,
        storage: TokenStorage,
        validator: TokenValidator,
        gateway: SettlementGateway,
        clock: Clock = utc_now,
    ) -> None:
        self.storage = storage
        self.validator = validator
        self.gateway = gateway
        self.clock = clock

    async def redeem(self, token_ids: Sequence[str], user_id: str) -> Transaction:
        if not token_ids:
            raise ValidationFailure("token_ids are required", reason="missing_fields")
        if len(set(token_ids)) != len(token_ids):
            raise ValidationFailure("Token referenced more than once", reason="duplicate_token")

        tokens: list[Token] = []
        for token_id in token_ids:
            record = await self.storage.get_token(token_id)
            if record is None:
                raise TokenNotFoundError(f"Token not found: {token_id}", token_id=token_id)
            result = await self.validator.validate(record, user_id, persisted=record)
            if not result.valid:
                raise TokenStateError(
                    f"Token {token_id} cannot be redeemed: {result.failure_reason}",
                    token_id=token_id,
                    reason=result.failure_reason,
                )
            tokens.append(record)

        now = self.clock()
        tx = Transaction(
            id=str(uuid4()),
            sender_id=user_id,
            amount=total_amount(t.amount for t in tokens),
            type=TransactionType.REDEMPTION,
            status=TransactionStatus.PENDING,
            token_ids=tuple(token_ids),
            source=TransactionSource.ONLINE,
            timestamp=now,
            created_at=now,
        )
        await self.storage.create_transaction(tx)

        if not await self.storage.consume_tokens(list(token_ids)):
            await self.storage.conditional_set_transaction_status(
                tx.id, TransactionStatus.PENDING, TransactionStatus.FAILED, error_message=CONSUMED_CONCURRENTLY
            )
            log.info("redemption_conflict", transaction_id=tx.id, user_id=user_id)
            raise ConflictError("Tokens were consumed concurrently", reason=CONSUMED_CONCURRENTLY)

        log.info("redemption_started", transaction_id=tx.id, user_id=user_id, amount=decimal_text(tx.amount))
        return await self._settle(tx, tokens)

    async def retry_redemption(self, transaction_id: str) -> Transaction:
        tx = await self.storage.get_transaction(transaction_id)
        if tx is None or tx.type != TransactionType.REDEMPTION:
            raise ValidationFailure(f"No redemption transaction {transaction_id}", reason="transaction_not_found")
        if tx.error_message == CONSUMED_CONCURRENTLY:
            # Its tokens were never spent for it; settling would pay out value it does not hold.
            raise ConflictError(
                f"Redemption {transaction_id} never held its tokens",
                conflicting_transaction_id=transaction_id,
                reason="transaction_not_retryable",
            )
        if not await self.storage.conditional_set_transaction_status(
            tx.id, TransactionStatus.FAILED, TransactionStatus.PENDING
        ):
            raise ConflictError(
                f"Redemption {transaction_id} is not in a failed state",
                conflicting_transaction_id=transaction_id,
                reason="transaction_not_failed",
            )

        tokens: list[Token] = []
        for token_id in tx.token_ids:
            record = await self.storage.get_token(token_id)
            if record is None:
                raise TokenNotFoundError(f"Token not found: {token_id}", token_id=token_id)
            tokens.append(record)
        log.info("redemption_retried", transaction_id=tx.id)
        return await self._settle(tx, tokens)

    async def _settle(self, tx: Transaction, tokens: list[Token]) -> Transaction:
        try:
            reference = await self.gateway.redeem(tokens)
        except SettlementError as exc:
            await self.storage.conditional_set_transaction_status(
                tx.id, TransactionStatus.PENDING, TransactionStatus.FAILED, error_message=str(exc) or exc.reason
            )
            log.warning("redemption_failed", transaction_id=tx.id, reason=exc.reason)
            raise SettlementError(str(exc), transaction_id=tx.id, reason=exc.reason) from exc

        await self.storage.conditional_set_statuses(list(tx.token_ids), TokenStatus.SPENT, TokenStatus.REDEEMED)
        await self.storage.conditional_set_transaction_status(
            tx.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED, settlement_reference=reference
        )
        log.info("redemption_completed", transaction_id=tx.id, settlement_reference=reference)
        settled = await self.storage.get_transaction(tx.id)
        if settled is None:
            raise PersistenceError(f"Redemption {tx.id} vanished after settlement")
        return settled
