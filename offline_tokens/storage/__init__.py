"""Storage adapters for token and transaction records."""

from __future__ import annotations

import os

from .base import TokenStorage
from .memory import InMemoryStorage
from .postgres import PostgresStorage


def create_storage_from_env() -> TokenStorage:
    """Create Postgres storage if env configured, otherwise in-memory."""
    dsn = os.getenv("OFFLINE_TOKENS_PG_DSN") or os.getenv("DATABASE_URL")
    if dsn:
        return PostgresStorage(dsn=dsn)
    return InMemoryStorage()


__all__ = [
    "TokenStorage",
    "InMemoryStorage",
    "PostgresStorage",
    "create_storage_from_env",
]
