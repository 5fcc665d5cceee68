"""Example: issue tokens, spend them offline, then reconcile the batch."""

from __future__ import annotations

import asyncio
import json
import os

from offline_tokens import OfflineTokenService, configure_structlog
from offline_tokens.storage import PostgresStorage


async def main() -> None:
    configure_structlog(environment=os.getenv("ENVIRONMENT", "development"))
    service = OfflineTokenService.from_env()
    if isinstance(service.storage, PostgresStorage):
        await service.storage.ensure_schema()

    try:
        [token] = await service.issue("user-001", "100")
        print("issuer public key:", service.public_key)

        # Two devices spend the same token while offline; the second loses.
        batch = [
            {"id": "device-a-1", "amount": "30", "type": "purchase", "token_ids": [token.id], "receiver_id": "cafe"},
            {"id": "device-b-1", "amount": "50", "type": "purchase", "token_ids": [token.id], "receiver_id": "books"},
        ]
        result = await service.sync_batch(batch, "user-001")
        print(json.dumps(result.to_dict(), indent=2))

        print("balance:", await service.balance("user-001"))
        change_ids = [o.change_token.id for o in result.outcomes if o.change_token]
        if change_ids:
            redemption = await service.redeem(change_ids, "user-001")
            print("redeemed:", redemption.settlement_reference)
    finally:
        await service.close()


if __name__ == "__main__":
    asyncio.run(main())
