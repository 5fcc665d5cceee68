"""Batch reconciliation of transactions recorded while offline."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional
from uuid import uuid4

import structlog

from ..errors import ConflictError, TokenStateError, ValidationFailure
from ..models.sync import (
    ConflictRecord,
    ConflictResolution,
    ConflictType,
    SyncBatchResult,
    SyncOutcome,
    SyncStatus,
)
from ..models.transaction import OfflineTransaction, TransactionSource
from .processor import Submission, TransactionProcessor, parse_submission

log = structlog.get_logger(__name__)


def _local_id(item: Submission) -> str:
    if isinstance(item, OfflineTransaction):
        return item.local_id
    if isinstance(item, dict):
        return str(item.get("id") or item.get("local_id") or "")
    return ""


class SyncReconciler:
    """Decide accepted / rejected / conflict for each transaction in a batch.

    Outcomes come back in submission order. Rejections and conflicts are
    results; only storage failures and conservation violations propagate.
    Double spends are resolved ``server_wins``: the transaction committed first
    keeps the token.
    """

    resolution = ConflictResolution.SERVER_WINS

    def __init__(self, *, processor: TransactionProcessor, concurrency: int = 1) -> None:
        self.processor = processor
        self.concurrency = concurrency

    async def sync_batch(
        self,
        transactions: Iterable[Submission],
        user_id: str,
        *,
        concurrency: Optional[int] = None,
    ) -> SyncBatchResult:
        items = list(transactions)
        batch_id = str(uuid4())
        limit = max(1, concurrency or self.concurrency)
        with structlog.contextvars.bound_contextvars(batch_id=batch_id, user_id=user_id):
            log.info("sync_batch_started", transaction_count=len(items), concurrency=limit)
            if limit == 1:
                outcomes = [await self._reconcile_one(item, user_id) for item in items]
            else:
                gate = asyncio.Semaphore(limit)

                async def bounded(item: Submission) -> SyncOutcome:
                    async with gate:
                        return await self._reconcile_one(item, user_id)

                outcomes = list(await asyncio.gather(*(bounded(item) for item in items)))

            result = SyncBatchResult(batch_id=batch_id, outcomes=tuple(outcomes))
            log.info(
                "sync_batch_completed",
                accepted=result.count(SyncStatus.ACCEPTED),
                rejected=result.count(SyncStatus.REJECTED),
                conflicts=result.count(SyncStatus.CONFLICT),
            )
            return result

    async def _reconcile_one(self, item: Submission, user_id: str) -> SyncOutcome:
        local_id = _local_id(item)
        try:
            submission = parse_submission(item)
            committed = await self.processor.process(submission, user_id, source=TransactionSource.OFFLINE_SYNC)
        except ConflictError as exc:
            log.info("sync_conflict", local_id=local_id, token_id=exc.token_id, conflicting=exc.conflicting_transaction_id)
            return SyncOutcome(
                local_id=local_id,
                status=SyncStatus.CONFLICT,
                reason=ConflictType.DOUBLE_SPEND.value,
                conflict=ConflictRecord(
                    local_id=local_id,
                    conflict_type=ConflictType.DOUBLE_SPEND,
                    resolution=self.resolution,
                    conflicting_transaction_ref=exc.conflicting_transaction_id,
                ),
            )
        except (ValidationFailure, TokenStateError) as exc:
            log.info("sync_rejected", local_id=local_id, reason=exc.reason)
            return SyncOutcome(local_id=local_id, status=SyncStatus.REJECTED, reason=exc.reason)

        return SyncOutcome(
            local_id=local_id,
            status=SyncStatus.ACCEPTED,
            server_transaction_id=committed.transaction.id,
            change_token=committed.change_token,
        )
