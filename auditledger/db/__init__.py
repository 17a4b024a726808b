"""
Database Layer for the Audit Ledger

Provides:
- LedgerStore abstraction (InMemory for dev/tests, Postgres for prod)
- PostgreSQL schema with the immutability trigger
- Environment-based connection configuration

PostgresLedgerStore lives in db.postgres and is imported from there, so
the in-memory store works without psycopg2 installed.
"""

from .store import (
    LedgerStore,
    InMemoryLedgerStore,
    TransactionContext,
    DedupContext,
    ChainTail,
    StoreError,
    ConcurrencyError,
    LockTimeoutError,
)
from .config import DatabaseConfig, LedgerStoreDriver, get_database_url, get_ledgerstore_driver

__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "TransactionContext",
    "DedupContext",
    "ChainTail",
    "StoreError",
    "ConcurrencyError",
    "LockTimeoutError",
    "DatabaseConfig",
    "LedgerStoreDriver",
    "get_database_url",
    "get_ledgerstore_driver",
]
