"""Token division: split one active token into payment and change."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional

import structlog

from ..errors import (
    ConflictError,
    ConservationViolation,
    TokenNotFoundError,
    TokenStateError,
    ValidationFailure,
)
from ..models.token import DivisionResult, Token, TokenStatus
from ..storage.base import TokenStorage
from ..utils.encoding import decimal_text, exact_arithmetic, to_decimal, total_amount
from ..utils.time import Clock, utc_now
from .issuer import TokenIssuer

log = structlog.get_logger(__name__)


class TokenDivider:
    """The only place value is split; never creates or destroys it."""

    def __init__(self, *, storage: TokenStorage, issuer: TokenIssuer, clock: Clock = utc_now) -> None:
        self.storage = storage
        self.issuer = issuer
        self.clock = clock

    async def divide(
        self,
        token: Token | str,
        payment_amount: Any,
        *,
        owner_id: Optional[str] = None,
    ) -> DivisionResult:
        """Split ``token`` into a ``payment_amount`` token and the remainder.

        All preconditions are checked before anything is written. The parent
        flips ``active -> spent`` in the same storage unit that inserts the
        children; losing that race raises :class:`ConflictError` and leaves no
        children behind.
        """
        planned = await self.prepare(token, payment_amount, owner_id=owner_id)
        return await self.commit(planned)

    async def prepare(
        self,
        token: Token | str,
        payment_amount: Any,
        *,
        owner_id: Optional[str] = None,
    ) -> DivisionResult:
        """Check preconditions and mint the children without writing anything."""
        token_id = token if isinstance(token, str) else token.id
        try:
            payment = to_decimal(payment_amount)
        except ValueError as exc:
            raise ValidationFailure(str(exc), reason="invalid_amount") from exc

        current = await self.storage.get_token(token_id)
        if current is None:
            raise TokenNotFoundError(f"Token not found: {token_id}", token_id=token_id)
        if payment <= 0 or payment > current.amount:
            raise ValidationFailure(
                f"Payment amount {decimal_text(payment)} must be in (0, {decimal_text(current.amount)}]",
                reason="invalid_amount",
            )
        if owner_id is not None and current.owner_id != owner_id:
            raise TokenStateError("Token does not belong to user", token_id=token_id, reason="token_not_owned")
        if current.status != TokenStatus.ACTIVE:
            raise TokenStateError(
                f"Token status is {current.status.value}", token_id=token_id, reason="token_not_active"
            )
        if current.is_expired(self.clock()):
            raise TokenStateError("Token has expired", token_id=token_id, reason="expired_token")

        with exact_arithmetic():
            change = current.amount - payment
        payment_token = self.issuer.mint(
            owner_id=current.owner_id,
            amount=payment,
            parent_token_id=current.id,
            expires_at=current.expires_at,
        )
        change_token = None
        if change > 0:
            change_token = self.issuer.mint(
                owner_id=current.owner_id,
                amount=change,
                parent_token_id=current.id,
                expires_at=current.expires_at,
            )

        planned = DivisionResult(original=current, payment_token=payment_token, change_token=change_token)
        total = total_amount(c.amount for c in planned.children)
        if total != current.amount:
            raise ConservationViolation(
                f"Children sum to {decimal_text(total)}, parent holds {decimal_text(current.amount)}"
            )
        return planned

    async def commit(self, planned: DivisionResult) -> DivisionResult:
        """Retire the parent and insert the prepared children in one storage unit."""
        parent = planned.original
        if not await self.storage.split_token(parent.id, planned.children):
            log.info("token_division_conflict", token_id=parent.id)
            raise ConflictError(
                "Token was consumed concurrently", token_id=parent.id, reason="token_already_consumed"
            )

        log.info(
            "token_divided",
            token_id=parent.id,
            payment_token_id=planned.payment_token.id,
            change_token_id=planned.change_token.id if planned.change_token else None,
            payment_amount=decimal_text(planned.payment_token.amount),
            change_amount=decimal_text(planned.change_amount),
        )
        spent = await self.storage.get_token(parent.id)
        return replace(planned, original=spent or parent)
