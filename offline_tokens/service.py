"""High-level service wiring issuance, validation, sync and redemption."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

import structlog

from .config import TokenConfig
from .models.sync import CommitResult, SyncBatchResult
from .models.token import DivisionResult, Token, TokenStatus, ValidationResult
from .models.transaction import Transaction, TransactionPage, TransactionSource
from .settlement.base import SettlementGateway
from .settlement.memory import InMemorySettlementLedger
from .settlement.redeemer import TokenRedeemer
from .storage import create_storage_from_env
from .storage.base import TokenStorage
from .storage.memory import InMemoryStorage
from .sync.processor import Submission, TransactionProcessor, parse_submission
from .sync.reconciler import SyncReconciler
from .token.divider import TokenDivider
from .token.issuer import TokenIssuer
from .token.signer import KeyDirectory, KeyRing, Signer
from .token.validator import TokenValidator
from .utils.encoding import total_amount
from .utils.time import Clock, utc_now

log = structlog.get_logger(__name__)


class OfflineTokenService:
    """Inbound surface of the offline token protocol."""

    def __init__(
        self,
        *,
        storage: Optional[TokenStorage] = None,
        config: Optional[TokenConfig] = None,
        signer: Optional[Signer] = None,
        settlement: Optional[SettlementGateway] = None,
        key_directory: Optional[KeyDirectory] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or TokenConfig()
        self.storage = storage or InMemoryStorage()
        self.signer = signer or Signer(signing_key=self.config.signing_key)
        self.settlement = settlement or InMemorySettlementLedger()
        self.clock = clock
        self.key_ring = KeyRing([self.signer.public_key, *self.config.trusted_public_keys])

        self.issuer = TokenIssuer(storage=self.storage, signer=self.signer, config=self.config, clock=clock)
        self.validator = TokenValidator(storage=self.storage, key_ring=self.key_ring, clock=clock)
        self.divider = TokenDivider(storage=self.storage, issuer=self.issuer, clock=clock)
        self.processor = TransactionProcessor(
            storage=self.storage,
            validator=self.validator,
            divider=self.divider,
            key_directory=key_directory,
            clock=clock,
        )
        self.reconciler = SyncReconciler(processor=self.processor, concurrency=self.config.sync_concurrency)
        self.redeemer = TokenRedeemer(
            storage=self.storage, validator=self.validator, gateway=self.settlement, clock=clock
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "OfflineTokenService":
        """Build a service from ``OFFLINE_TOKENS_*`` and database environment variables."""
        overrides.setdefault("config", TokenConfig.from_env())
        overrides.setdefault("storage", create_storage_from_env())
        return cls(**overrides)

    @property
    def public_key(self) -> str:
        """Issuer public key for clients verifying tokens offline."""
        return self.signer.public_key

    async def issue(self, owner_id: str, amount: Any) -> list[Token]:
        return await self.issuer.issue(owner_id=owner_id, amount=amount)

    async def validate(self, token: Token | str, claimed_owner_id: str) -> ValidationResult:
        if isinstance(token, str):
            return await self.validator.validate_by_id(token, claimed_owner_id)
        return await self.validator.validate(token, claimed_owner_id)

    async def divide(self, token: Token | str, payment_amount: Any, *, owner_id: Optional[str] = None) -> DivisionResult:
        return await self.divider.divide(token, payment_amount, owner_id=owner_id)

    async def sync_batch(
        self,
        transactions: Iterable[Submission],
        user_id: str,
        *,
        concurrency: Optional[int] = None,
    ) -> SyncBatchResult:
        return await self.reconciler.sync_batch(transactions, user_id, concurrency=concurrency)

    async def submit(self, submission: Submission, user_id: str) -> CommitResult:
        """Commit one transaction online; failures raise instead of returning outcomes."""
        return await self.processor.process(parse_submission(submission), user_id, source=TransactionSource.ONLINE)

    async def redeem(self, token_ids: list[str], user_id: str) -> Transaction:
        return await self.redeemer.redeem(token_ids, user_id)

    async def retry_redemption(self, transaction_id: str) -> Transaction:
        return await self.redeemer.retry_redemption(transaction_id)

    async def retire_expired(self, owner_id: str) -> list[str]:
        """Move the owner's logically expired ``active`` tokens to ``expired``."""
        now = self.clock()
        retired: list[str] = []
        for token in await self.storage.list_tokens(owner_id, status=TokenStatus.ACTIVE):
            if not token.is_expired(now):
                continue
            if await self.storage.conditional_set_status(token.id, TokenStatus.ACTIVE, TokenStatus.EXPIRED):
                retired.append(token.id)
        if retired:
            log.info("tokens_retired", owner_id=owner_id, token_ids=retired)
        return retired

    async def balance(self, owner_id: str) -> Decimal:
        """Sum of the owner's active, unexpired tokens."""
        now = self.clock()
        tokens = await self.storage.list_tokens(owner_id, status=TokenStatus.ACTIVE)
        return total_amount(t.amount for t in tokens if not t.is_expired(now))

    async def transactions_since(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        rows = await self.storage.list_transactions_for_user(user_id, since=since, limit=limit + 1, offset=offset)
        return TransactionPage(
            transactions=tuple(rows[:limit]),
            limit=limit,
            offset=offset,
            has_more=len(rows) > limit,
        )

    async def close(self) -> None:
        await self.settlement.close()
        await self.storage.close()
