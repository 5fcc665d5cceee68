import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from offline_tokens import OfflineTokenService
from offline_tokens.errors import PersistenceError
from offline_tokens.models.token import TokenStatus
from offline_tokens.models.transaction import (
    Transaction,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from offline_tokens.storage import InMemoryStorage, PostgresStorage, create_storage_from_env
from offline_tokens.token.signer import Signer, generate_keypair

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _service(clock: Clock) -> OfflineTokenService:
    return OfflineTokenService(clock=clock, signer=Signer(signing_key=generate_keypair()[0]))


def _transaction(tx_id: str, sender: str, created_at: datetime, *token_ids: str) -> Transaction:
    return Transaction(
        id=tx_id,
        sender_id=sender,
        receiver_id="shop",
        amount=Decimal("1"),
        type=TransactionType.PURCHASE,
        status=TransactionStatus.PENDING,
        token_ids=token_ids,
        source=TransactionSource.ONLINE,
        timestamp=created_at,
        created_at=created_at,
    )


def test_retire_expired_only_touches_logically_expired_tokens() -> None:
    async def run() -> None:
        clock = Clock(START)
        service = _service(clock)
        [old] = await service.issue("alice", "10")
        clock.now = START + timedelta(days=20)
        [fresh] = await service.issue("alice", "5")

        clock.now = START + timedelta(days=31)
        assert await service.balance("alice") == Decimal("5")
        assert (await service.storage.get_token(old.id)).status == TokenStatus.ACTIVE

        retired = await service.retire_expired("alice")

        assert retired == [old.id]
        assert (await service.storage.get_token(old.id)).status == TokenStatus.EXPIRED
        assert (await service.storage.get_token(fresh.id)).status == TokenStatus.ACTIVE
        assert await service.retire_expired("alice") == []

    asyncio.run(run())


def test_transactions_since_pages_newest_first() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        for i in range(5):
            await service.storage.create_transaction(_transaction(f"tx-{i}", "alice", START + timedelta(minutes=i)))
        await service.storage.create_transaction(_transaction("other", "bob", START))

        page = await service.transactions_since("alice", limit=2)
        assert [t.id for t in page.transactions] == ["tx-4", "tx-3"]
        assert page.has_more is True

        last = await service.transactions_since("alice", limit=2, offset=4)
        assert [t.id for t in last.transactions] == ["tx-0"]
        assert last.has_more is False

        recent = await service.transactions_since("alice", START + timedelta(minutes=2))
        assert [t.id for t in recent.transactions] == ["tx-4", "tx-3"]
        assert recent.to_dict()["pagination"]["has_more"] is False

        shop = await service.transactions_since("shop")
        assert len(shop.transactions) == 6

    asyncio.run(run())


def test_conditional_updates_only_apply_from_expected_state() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        storage = service.storage
        a, b = await service.issue("alice", "1"), await service.issue("alice", "2")
        ids = [a[0].id, b[0].id]

        assert await storage.conditional_set_status(ids[0], TokenStatus.ACTIVE, TokenStatus.SPENT) is True
        assert await storage.conditional_set_status(ids[0], TokenStatus.ACTIVE, TokenStatus.SPENT) is False

        # One spent token blocks the whole group.
        assert await storage.consume_tokens(ids) is False
        assert (await storage.get_token(ids[1])).status == TokenStatus.ACTIVE
        assert await storage.consume_tokens([ids[1], "missing"]) is False
        assert (await storage.get_token(ids[1])).status == TokenStatus.ACTIVE

        assert await storage.conditional_set_status(ids[0], TokenStatus.SPENT, TokenStatus.REDEEMED) is True
        with pytest.raises(ValueError):
            await storage.conditional_set_status(ids[0], TokenStatus.REDEEMED, TokenStatus.ACTIVE)

    asyncio.run(run())


def test_transaction_status_transitions() -> None:
    async def run() -> None:
        storage = InMemoryStorage()
        await storage.create_transaction(_transaction("tx-1", "alice", START, "tok-1"))

        with pytest.raises(ValueError):
            await storage.conditional_set_transaction_status(
                "tx-1", TransactionStatus.COMPLETED, TransactionStatus.FAILED
            )
        assert await storage.conditional_set_transaction_status(
            "tx-1", TransactionStatus.PENDING, TransactionStatus.COMPLETED
        ) is True
        assert await storage.conditional_set_transaction_status(
            "tx-1", TransactionStatus.PENDING, TransactionStatus.FAILED
        ) is False
        completed = await storage.get_transaction("tx-1")
        assert completed.completed_at is not None
        assert [t.id for t in await storage.find_transactions_consuming_token("tok-1")] == ["tx-1"]
        assert await storage.find_transactions_consuming_token("tok-1", status=TransactionStatus.FAILED) == []

        with pytest.raises(PersistenceError):
            await storage.create_transaction(_transaction("tx-1", "alice", START))

    asyncio.run(run())


def test_storage_selected_from_env(monkeypatch) -> None:
    monkeypatch.delenv("OFFLINE_TOKENS_PG_DSN", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert isinstance(create_storage_from_env(), InMemoryStorage)

    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/tokens")
    storage = create_storage_from_env()
    assert isinstance(storage, PostgresStorage)
    assert storage.pool is None
