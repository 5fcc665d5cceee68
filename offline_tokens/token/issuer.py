"""Token issuance: minting, signing and denomination splitting."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence
from uuid import uuid4

import structlog

from ..config import TokenConfig
from ..errors import ConservationViolation, PersistenceError, ValidationFailure
from ..models.token import Token, TokenStatus, token_payload
from ..storage.base import TokenStorage
from ..utils.encoding import decimal_text, exact_arithmetic, to_decimal, total_amount
from ..utils.time import Clock, utc_now
from .signer import Signer

log = structlog.get_logger(__name__)


def split_denominations(amount: Decimal, denominations: Sequence[Decimal]) -> list[Decimal]:
    """Greedy split, largest denomination first; any remainder is one final piece.

    The pieces always sum to ``amount`` exactly.
    """
    pieces: list[Decimal] = []
    remaining = amount
    with exact_arithmetic():
        for denom in sorted(denominations, reverse=True):
            if denom <= 0:
                continue
            count = int(remaining // denom)
            pieces.extend([denom] * count)
            remaining -= denom * count
    if remaining > 0 or not pieces:
        pieces.append(remaining)
    return pieces


class TokenIssuer:
    """Mint signed tokens and persist them as ``active``."""

    def __init__(
        self,
        *,
        storage: TokenStorage,
        signer: Signer,
        config: TokenConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.storage = storage
        self.signer = signer
        self.config = config or TokenConfig()
        self.clock = clock

    @property
    def public_key(self) -> str:
        return self.signer.public_key

    def mint(
        self,
        *,
        owner_id: str,
        amount: Decimal,
        parent_token_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Token:
        """Build and sign a token without persisting it."""
        issued_at = self.clock()
        expires = expires_at or issued_at + self.config.validity
        if expires <= issued_at:
            raise ValidationFailure("Token would be born expired", reason="expired_token")
        token_id = str(uuid4())
        payload = token_payload(
            token_id=token_id,
            owner_id=owner_id,
            amount=amount,
            issued_at=issued_at,
            expires_at=expires,
        )
        return Token(
            id=token_id,
            owner_id=owner_id,
            amount=amount,
            issued_at=issued_at,
            expires_at=expires,
            issuer_public_key=self.signer.public_key,
            signature=self.signer.sign(payload),
            status=TokenStatus.ACTIVE,
            parent_token_id=parent_token_id,
        )

    async def issue(self, *, owner_id: str, amount: Any) -> list[Token]:
        """Mint one or more tokens totalling ``amount`` and persist them atomically."""
        if not owner_id:
            raise ValidationFailure("owner_id is required", reason="missing_fields")
        try:
            value = to_decimal(amount)
        except ValueError as exc:
            raise ValidationFailure(str(exc), reason="invalid_amount") from exc
        if value <= 0:
            raise ValidationFailure(f"Amount must be positive, got {amount}", reason="invalid_amount")
        if value > self.config.max_issue_amount:
            raise ValidationFailure(
                f"Amount {decimal_text(value)} exceeds maximum {decimal_text(self.config.max_issue_amount)}",
                reason="amount_above_limit",
            )

        tokens = [self.mint(owner_id=owner_id, amount=piece) for piece in split_denominations(value, self.config.denominations)]
        if total_amount(t.amount for t in tokens) != value:
            raise ConservationViolation("Denomination split does not add up to the requested amount")

        try:
            await self.storage.create_tokens(tokens)
        except PersistenceError:
            log.error("token_issue_failed", owner_id=owner_id, amount=decimal_text(value))
            raise
        log.info(
            "tokens_issued",
            owner_id=owner_id,
            amount=decimal_text(value),
            token_count=len(tokens),
            token_ids=[t.id for t in tokens],
        )
        return tokens
