import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Sequence

import pytest

from offline_tokens import OfflineTokenService
from offline_tokens.errors import ConflictError, TokenNotFoundError, TokenStateError, ValidationFailure
from offline_tokens.models.token import Token, TokenStatus
from offline_tokens.storage.memory import InMemoryStorage
from offline_tokens.token.signer import Signer, generate_keypair

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class YieldingStorage(InMemoryStorage):
    """Yields to the loop before splitting so concurrent divisions both get that far."""

    async def split_token(self, parent_id: str, children: Sequence[Token]) -> bool:
        await asyncio.sleep(0)
        return await super().split_token(parent_id, children)


def _service(clock: Clock, **kwargs) -> OfflineTokenService:
    return OfflineTokenService(clock=clock, signer=Signer(signing_key=generate_keypair()[0]), **kwargs)


def test_expiry_follows_the_clock_and_never_writes() -> None:
    async def run() -> None:
        clock = Clock(START)
        service = _service(clock)
        [token] = await service.issue("alice", "10")

        assert (await service.validate(token.id, "alice")).not_expired is True

        clock.now = token.expires_at + timedelta(microseconds=1)
        result = await service.validate(token.id, "alice")
        assert result.not_expired is False
        assert result.valid is False
        assert result.failure_reason == "expired_token"
        assert (await service.storage.get_token(token.id)).status == TokenStatus.ACTIVE

        clock.now = START
        assert (await service.validate(token.id, "alice")).valid is True

    asyncio.run(run())


def test_validation_checks_are_independent() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        [token] = await service.issue("alice", "10")

        result = await service.validate(token, "bob")
        assert result.signature_valid and result.not_expired and result.not_spent
        assert result.ownership_valid is False
        assert result.failure_reason == "token_not_owned"

        forged = replace(token, amount=Decimal("1000"))
        assert (await service.validate(forged, "alice")).signature_valid is False

        with pytest.raises(TokenNotFoundError):
            await service.validate("missing", "alice")

    asyncio.run(run())


def test_divide_makes_payment_and_change() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        [token] = await service.issue("alice", "100")

        result = await service.divide(token.id, "30", owner_id="alice")

        assert result.payment_token.amount == Decimal("30")
        assert result.change_token is not None
        assert result.change_token.amount == Decimal("70")
        assert result.change_amount == Decimal("70")
        for child in (result.payment_token, result.change_token):
            assert child.status == TokenStatus.ACTIVE
            assert child.parent_token_id == token.id
            assert child.expires_at == token.expires_at
            assert (await service.validate(child, "alice")).valid is True
        assert result.original.status == TokenStatus.SPENT
        assert (await service.storage.get_token(token.id)).status == TokenStatus.SPENT
        assert await service.balance("alice") == Decimal("100")

    asyncio.run(run())


def test_divide_full_amount_has_no_change() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        [token] = await service.issue("alice", "25")
        result = await service.divide(token, "25")
        assert result.change_token is None
        assert result.payment_token.amount == Decimal("25")

    asyncio.run(run())


def test_divide_long_amounts_without_rounding() -> None:
    async def run() -> None:
        service = _service(Clock(START))
        [token] = await service.issue("alice", "1.00000000000000000000000000001")

        result = await service.divide(token.id, "0.50000000000000000000000000001")

        assert result.payment_token.amount == Decimal("0.50000000000000000000000000001")
        assert result.change_token.amount == Decimal("0.5")
        assert await service.balance("alice") == Decimal("1.00000000000000000000000000001")
        assert (await service.validate(result.payment_token, "alice")).valid is True

    asyncio.run(run())


@pytest.mark.parametrize("payment", ["150", "0", "-1", 2.5])
def test_divide_rejects_bad_payment_before_mutation(payment) -> None:
    async def run() -> None:
        service = _service(Clock(START))
        [token] = await service.issue("alice", "100")

        with pytest.raises(ValidationFailure) as excinfo:
            await service.divide(token.id, payment)

        assert excinfo.value.reason == "invalid_amount"
        assert list(service.storage.tokens) == [token.id]
        assert service.storage.tokens[token.id].status == TokenStatus.ACTIVE

    asyncio.run(run())


def test_divide_checks_owner_status_and_expiry() -> None:
    async def run() -> None:
        clock = Clock(START)
        service = _service(clock)
        [token] = await service.issue("alice", "100")

        with pytest.raises(TokenStateError) as excinfo:
            await service.divide(token.id, "10", owner_id="bob")
        assert excinfo.value.reason == "token_not_owned"

        clock.now = token.expires_at + timedelta(seconds=1)
        with pytest.raises(TokenStateError) as excinfo:
            await service.divide(token.id, "10")
        assert excinfo.value.reason == "expired_token"

        clock.now = START
        await service.divide(token.id, "10")
        with pytest.raises(TokenStateError) as excinfo:
            await service.divide(token.id, "10")
        assert excinfo.value.reason == "token_not_active"

    asyncio.run(run())


def test_concurrent_divisions_have_exactly_one_winner() -> None:
    async def run() -> None:
        storage = YieldingStorage()
        service = _service(Clock(START), storage=storage)
        [token] = await service.issue("alice", "100")

        results = await asyncio.gather(
            service.divide(token.id, "40"),
            service.divide(token.id, "60"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], ConflictError)
        assert losers[0].token_id == token.id

        children = [t for t in storage.tokens.values() if t.parent_token_id == token.id]
        assert sum(c.amount for c in children) == Decimal("100")
        assert await service.balance("alice") == Decimal("100")

    asyncio.run(run())
