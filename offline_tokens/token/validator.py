"""Token spendability checks.

Validation is read-only and advisory: ``not_spent`` reflects the persisted
status at read time and can be stale by the time a caller acts on it. Any
actual spend goes through a conditional update.
"""

from __future__ import annotations

from typing import Optional

import structlog

from ..errors import TokenNotFoundError
from ..models.token import Token, TokenStatus, ValidationResult
from ..storage.base import TokenStorage
from ..utils.time import Clock, utc_now
from .signer import KeyRing

log = structlog.get_logger(__name__)


class TokenValidator:
    """Answer whether a token is currently spendable by a claimant."""

    def __init__(self, *, storage: TokenStorage, key_ring: KeyRing, clock: Clock = utc_now) -> None:
        self.storage = storage
        self.key_ring = key_ring
        self.clock = clock

    def check_signature(self, token: Token) -> bool:
        return self.key_ring.verify(token.signing_payload(), token.signature, token.issuer_public_key)

    async def validate(
        self,
        token: Token,
        claimed_owner_id: str,
        *,
        persisted: Optional[Token] = None,
    ) -> ValidationResult:
        """Run the four independent checks against ``token`` as presented.

        ``persisted`` may be passed when the caller already loaded the record;
        otherwise the current status is read from storage.
        """
        record = persisted if persisted is not None else await self.storage.get_token(token.id)
        result = ValidationResult(
            token_id=token.id,
            signature_valid=self.check_signature(token),
            not_expired=not token.is_expired(self.clock()),
            not_spent=record is not None and record.status == TokenStatus.ACTIVE,
            ownership_valid=token.owner_id == claimed_owner_id,
            status=record.status if record is not None else None,
        )
        log.debug("token_validated", token_id=token.id, valid=result.valid, reason=result.failure_reason)
        return result

    async def validate_by_id(self, token_id: str, claimed_owner_id: str) -> ValidationResult:
        """Load the persisted token, then validate it."""
        record = await self.storage.get_token(token_id)
        if record is None:
            raise TokenNotFoundError(f"Token not found: {token_id}", token_id=token_id)
        return await self.validate(record, claimed_owner_id, persisted=record)
