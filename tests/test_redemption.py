import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

import pytest

from offline_tokens import OfflineTokenService
from offline_tokens.errors import (
    ConflictError,
    PersistenceError,
    SettlementError,
    TokenStateError,
    ValidationFailure,
)
from offline_tokens.models.token import TokenStatus
from offline_tokens.models.transaction import Transaction, TransactionStatus, TransactionType
from offline_tokens.settlement.memory import InMemorySettlementLedger
from offline_tokens.storage.memory import InMemoryStorage
from offline_tokens.token.signer import Signer, generate_keypair

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class BrokenTransactionStorage(InMemoryStorage):
    async def create_transaction(self, transaction: Transaction) -> None:
        raise PersistenceError("connection reset")


class RacingStorage(InMemoryStorage):
    """Another redemption spends the tokens right before the first consume."""

    async def consume_tokens(self, token_ids: Sequence[str]) -> bool:
        await super().consume_tokens(token_ids)
        return await super().consume_tokens(token_ids)


class VanishingStorage(InMemoryStorage):
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return None


def _service(ledger: InMemorySettlementLedger, **kwargs) -> OfflineTokenService:
    return OfflineTokenService(
        clock=lambda: NOW,
        signer=Signer(signing_key=generate_keypair()[0]),
        settlement=ledger,
        **kwargs,
    )


def test_redeem_settles_and_marks_tokens_redeemed() -> None:
    async def run() -> None:
        ledger = InMemorySettlementLedger()
        service = _service(ledger)
        tokens = await service.issue("alice", "15") + await service.issue("alice", "5")

        tx = await service.redeem([t.id for t in tokens], "alice")

        assert tx.type == TransactionType.REDEMPTION
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.amount == Decimal("20")
        assert tx.settlement_reference in ledger.settlements
        assert ledger.balances["alice"] == Decimal("20")
        for token in tokens:
            stored = await service.storage.get_token(token.id)
            assert stored.status == TokenStatus.REDEEMED
            assert stored.redeemed_at is not None

    asyncio.run(run())


def test_settlement_failure_holds_tokens_and_retry_completes() -> None:
    async def run() -> None:
        ledger = InMemorySettlementLedger(fail_next=1)
        service = _service(ledger)
        [token] = await service.issue("alice", "40")

        with pytest.raises(SettlementError) as excinfo:
            await service.redeem([token.id], "alice")

        tx_id = excinfo.value.transaction_id
        failed = await service.storage.get_transaction(tx_id)
        assert failed.status == TransactionStatus.FAILED
        assert failed.error_message
        assert (await service.storage.get_token(token.id)).status == TokenStatus.SPENT
        assert await service.balance("alice") == Decimal("0")

        retried = await service.retry_redemption(tx_id)
        assert retried.status == TransactionStatus.COMPLETED
        assert retried.settlement_reference is not None
        assert (await service.storage.get_token(token.id)).status == TokenStatus.REDEEMED

        with pytest.raises(ConflictError) as excinfo:
            await service.retry_redemption(tx_id)
        assert excinfo.value.reason == "transaction_not_failed"

    asyncio.run(run())


def test_redeem_rejects_unusable_tokens() -> None:
    async def run() -> None:
        service = _service(InMemorySettlementLedger())
        [token] = await service.issue("alice", "10")

        with pytest.raises(TokenStateError) as excinfo:
            await service.redeem([token.id], "bob")
        assert excinfo.value.reason == "token_not_owned"

        await service.redeem([token.id], "alice")
        with pytest.raises(TokenStateError) as excinfo:
            await service.redeem([token.id], "alice")
        assert excinfo.value.reason == "token_not_active"

        with pytest.raises(ValidationFailure):
            await service.retry_redemption("missing")

    asyncio.run(run())


def test_storage_failure_before_consume_leaves_tokens_active() -> None:
    async def run() -> None:
        ledger = InMemorySettlementLedger()
        service = _service(ledger, storage=BrokenTransactionStorage())
        [token] = await service.issue("alice", "25")

        with pytest.raises(PersistenceError):
            await service.redeem([token.id], "alice")

        assert (await service.storage.get_token(token.id)).status == TokenStatus.ACTIVE
        assert service.storage.transactions == {}
        assert ledger.settlements == {}
        assert await service.balance("alice") == Decimal("25")

    asyncio.run(run())


def test_lost_consume_race_fails_redemption_and_blocks_retry() -> None:
    async def run() -> None:
        ledger = InMemorySettlementLedger()
        service = _service(ledger, storage=RacingStorage())
        [token] = await service.issue("alice", "25")

        with pytest.raises(ConflictError) as excinfo:
            await service.redeem([token.id], "alice")
        assert excinfo.value.reason == "token_already_consumed"

        [tx] = service.storage.transactions.values()
        assert tx.status == TransactionStatus.FAILED
        assert tx.error_message == "token_already_consumed"
        assert ledger.settlements == {}

        with pytest.raises(ConflictError) as excinfo:
            await service.retry_redemption(tx.id)
        assert excinfo.value.reason == "transaction_not_retryable"
        assert (await service.storage.get_transaction(tx.id)).status == TransactionStatus.FAILED
        assert ledger.settlements == {}

    asyncio.run(run())


def test_settled_transaction_missing_from_storage_is_a_persistence_error() -> None:
    async def run() -> None:
        ledger = InMemorySettlementLedger()
        service = _service(ledger, storage=VanishingStorage())
        [token] = await service.issue("alice", "5")

        with pytest.raises(PersistenceError):
            await service.redeem([token.id], "alice")
        assert len(ledger.settlements) == 1

    asyncio.run(run())
