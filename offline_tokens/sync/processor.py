"""Shared commit pipeline for online submissions and synced offline transactions."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import uuid4

import structlog

from ..errors import ConflictError, TokenNotFoundError, TokenStateError, ValidationFailure
from ..models.sync import CommitResult
from ..models.token import DivisionResult, Token
from ..models.transaction import (
    OfflineTransaction,
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from ..storage.base import TokenStorage
from ..token.divider import TokenDivider
from ..token.signer import KeyDirectory
from ..token.validator import TokenValidator
from ..utils.encoding import decimal_text, exact_arithmetic, to_decimal, total_amount
from ..utils.time import Clock, utc_now

log = structlog.get_logger(__name__)

Submission = Union[OfflineTransaction, dict[str, Any]]

CONSUMED_CONCURRENTLY = "token_already_consumed"


def parse_submission(item: Submission) -> OfflineTransaction:
    """Accept an :class:`OfflineTransaction` or its wire dict; malformed input is a validation failure."""
    if isinstance(item, OfflineTransaction):
        return item
    if not isinstance(item, dict):
        raise ValidationFailure(f"Unsupported transaction payload: {type(item).__name__}", reason="missing_fields")
    try:
        return OfflineTransaction.from_dict(item)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"Malformed transaction: {exc}", reason="missing_fields") from exc


class TransactionProcessor:
    """Validate, conflict-check and commit one submitted transaction.

    Every failure is raised: :class:`ValidationFailure` for structural problems
    and short balances, :class:`TokenStateError` for unusable tokens and
    :class:`ConflictError` when a token was already claimed by another
    transaction or a conditional update lost a race.
    """

    def __init__(
        self,
        *,
        storage: TokenStorage,
        validator: TokenValidator,
        divider: TokenDivider,
        key_directory: Optional[KeyDirectory] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.storage = storage
        self.validator = validator
        self.divider = divider
        self.key_directory = key_directory
        self.clock = clock

    async def process(
        self,
        submission: Submission,
        user_id: str,
        *,
        source: TransactionSource = TransactionSource.OFFLINE_SYNC,
    ) -> CommitResult:
        submission = parse_submission(submission)
        amount, tx_type = self._check_structure(submission)
        tokens = await self._load_valid_tokens(submission, user_id)
        self._check_sender_signature(submission, user_id)

        available = total_amount(t.amount for t in tokens)
        if available < amount:
            raise ValidationFailure(
                f"Tokens hold {decimal_text(available)}, transaction needs {decimal_text(amount)}",
                reason="insufficient_balance",
            )
        for token in tokens:
            await self._raise_if_consumed(token.id)

        return await self._commit(submission, user_id, tokens, amount, tx_type, source)

    def _check_structure(self, submission: OfflineTransaction) -> tuple[Decimal, TransactionType]:
        if not submission.local_id or not submission.token_ids or submission.amount is None or not submission.type:
            raise ValidationFailure("id, amount, type and token_ids are required", reason="missing_fields")
        try:
            amount = to_decimal(submission.amount)
        except ValueError as exc:
            raise ValidationFailure(str(exc), reason="invalid_amount") from exc
        if amount <= 0:
            raise ValidationFailure(f"Amount must be positive, got {decimal_text(amount)}", reason="invalid_amount")
        try:
            tx_type = TransactionType(submission.type)
        except ValueError as exc:
            raise ValidationFailure(f"Unknown transaction type: {submission.type!r}", reason="invalid_type") from exc
        if len(set(submission.token_ids)) != len(submission.token_ids):
            raise ValidationFailure("Token referenced more than once", reason="duplicate_token")
        if tx_type == TransactionType.TRANSFER:
            if not submission.receiver_id:
                raise ValidationFailure("Transfers need a receiver_id", reason="missing_fields")
            if not submission.sender_signature:
                raise ValidationFailure("Transfers need a sender signature", reason="missing_sender_signature")
        return amount, tx_type

    async def _load_valid_tokens(self, submission: OfflineTransaction, user_id: str) -> list[Token]:
        tokens: list[Token] = []
        for token_id in submission.token_ids:
            record = await self.storage.get_token(token_id)
            if record is None:
                raise TokenNotFoundError(f"Token not found: {token_id}", token_id=token_id)
            result = await self.validator.validate(record, user_id, persisted=record)
            reason = result.failure_reason
            if reason == "token_not_active":
                # A spent token may be a double spend rather than a stale reference.
                await self._raise_if_claimed(token_id)
            if reason is not None:
                raise TokenStateError(f"Token {token_id} failed validation: {reason}", token_id=token_id, reason=reason)
            tokens.append(record)
        return tokens

    def _check_sender_signature(self, submission: OfflineTransaction, user_id: str) -> None:
        if self.key_directory is None or not submission.sender_signature:
            return
        verdict = self.key_directory.verify(user_id, submission.signing_payload(user_id), submission.sender_signature)
        if verdict is False:
            raise ValidationFailure("Sender signature does not verify", reason="invalid_signature")

    async def _raise_if_consumed(self, token_id: str) -> None:
        completed = await self.storage.find_transactions_consuming_token(token_id, status=TransactionStatus.COMPLETED)
        if completed:
            raise ConflictError(
                f"Token {token_id} already spent by transaction {completed[0].id}",
                token_id=token_id,
                conflicting_transaction_id=completed[0].id,
            )

    async def _raise_if_claimed(self, token_id: str, *, exclude: Optional[str] = None) -> None:
        """Raise a conflict when a completed or in-flight transaction holds ``token_id``."""
        await self._raise_if_consumed(token_id)
        winner = await self._find_winner([token_id], exclude=exclude)
        if winner is not None:
            raise ConflictError(
                f"Token {token_id} claimed by transaction {winner}",
                token_id=token_id,
                conflicting_transaction_id=winner,
            )

    async def _commit(
        self,
        submission: OfflineTransaction,
        user_id: str,
        tokens: list[Token],
        amount: Decimal,
        tx_type: TransactionType,
        source: TransactionSource,
    ) -> CommitResult:
        consumed = [t.id for t in tokens]
        recorded = list(consumed)
        division: Optional[DivisionResult] = None

        with exact_arithmetic():
            excess = total_amount(t.amount for t in tokens) - amount
        if excess > 0:
            last = tokens[-1]
            if excess >= last.amount:
                raise ValidationFailure(
                    f"Token {last.id} is not needed to cover {decimal_text(amount)}",
                    reason="excess_tokens",
                )
            with exact_arithmetic():
                payment = last.amount - excess
            try:
                division = await self.divider.prepare(last, payment, owner_id=user_id)
            except TokenStateError as exc:
                if exc.reason == "token_not_active":
                    await self._raise_if_claimed(last.id)
                raise
            consumed[-1] = division.payment_token.id
            recorded.append(division.payment_token.id)

        change_token = division.change_token if division else None
        tx = Transaction(
            id=str(uuid4()),
            local_id=submission.local_id,
            sender_id=user_id,
            receiver_id=submission.receiver_id,
            amount=amount,
            type=tx_type,
            status=TransactionStatus.PENDING,
            token_ids=tuple(recorded),
            source=source,
            timestamp=submission.timestamp or self.clock(),
            sender_signature=submission.sender_signature,
            receiver_signature=submission.receiver_signature,
            change_token_id=change_token.id if change_token else None,
        )
        # The pending row exists before any token moves so a racing submission can name it.
        await self.storage.create_transaction(tx)

        if division is not None:
            try:
                await self.divider.commit(division)
            except ConflictError:
                await self._fail_and_raise(tx, recorded)

        if not await self.storage.consume_tokens(consumed):
            await self._fail_and_raise(tx, recorded)

        await self.storage.conditional_set_transaction_status(tx.id, TransactionStatus.PENDING, TransactionStatus.COMPLETED)
        committed = await self.storage.get_transaction(tx.id) or replace(tx, status=TransactionStatus.COMPLETED)
        log.info(
            "transaction_committed",
            transaction_id=tx.id,
            local_id=submission.local_id,
            source=source.value,
            amount=decimal_text(amount),
            token_count=len(recorded),
            change_token_id=tx.change_token_id,
        )
        return CommitResult(transaction=committed, change_token=change_token)

    async def _fail_and_raise(self, tx: Transaction, token_ids: list[str]) -> None:
        await self.storage.conditional_set_transaction_status(
            tx.id,
            TransactionStatus.PENDING,
            TransactionStatus.FAILED,
            error_message=CONSUMED_CONCURRENTLY,
        )
        winner = await self._find_winner(token_ids, exclude=tx.id)
        log.info("transaction_commit_conflict", transaction_id=tx.id, local_id=tx.local_id, winner=winner)
        raise ConflictError(
            "Tokens were consumed concurrently",
            conflicting_transaction_id=winner,
            reason="double_spend",
        )

    async def _find_winner(self, token_ids: list[str], *, exclude: Optional[str]) -> Optional[str]:
        for token_id in token_ids:
            for other in await self.storage.find_transactions_consuming_token(token_id):
                if other.id != exclude and other.status != TransactionStatus.FAILED:
                    return other.id
        return None
