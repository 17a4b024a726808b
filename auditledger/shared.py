"""
Shared Ledger Instances

Process-wide store, ledger service, auto-logger, anchor service and
verifier. Supports both in-memory (development) and PostgreSQL
(production) modes.

Mode is determined by environment variables:
- LEDGERSTORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

A configured database that cannot be reached is an error, never a
silent fallback to memory.
"""

from threading import Lock
from typing import Optional

from .core import (
    AnchorScheduler,
    AutoLogger,
    ChainVerifier,
    LedgerConfig,
    LedgerService,
    RootAnchorService,
)
from .db.config import DatabaseConfig, LedgerStoreDriver, get_database_url, get_ledgerstore_driver
from .db.store import InMemoryLedgerStore, LedgerStore
from .observability import get_logger

logger = get_logger(__name__)

_lock = Lock()
_store: Optional[LedgerStore] = None
_ledger: Optional[LedgerService] = None
_autologger: Optional[AutoLogger] = None
_anchor_service: Optional[RootAnchorService] = None
_scheduler: Optional[AnchorScheduler] = None


def _create_ledger_store(config: LedgerConfig) -> LedgerStore:
    """
    Create the appropriate LedgerStore based on configuration.

    Returns:
        InMemoryLedgerStore for development/testing
        PostgresLedgerStore for production (when a database is configured)
    """
    driver = get_ledgerstore_driver()

    if driver == LedgerStoreDriver.MEMORY:
        logger.info("Using in-memory ledger store (no persistence)")
        return InMemoryLedgerStore(lock_timeout_ms=config.lock_timeout_ms)

    db_url = get_database_url()
    db_config = DatabaseConfig.from_url(db_url) if db_url else DatabaseConfig.from_env()
    return _create_psycopg2_store(db_config, config)


def _create_psycopg2_store(db_config: DatabaseConfig, config: LedgerConfig) -> LedgerStore:
    """Create PostgresLedgerStore with psycopg2 and check the connection."""
    import psycopg2
    from .db.postgres import PostgresLedgerStore

    def connection_factory():
        return psycopg2.connect(db_config.to_dsn())

    try:
        connection_factory().close()
    except psycopg2.Error as e:
        logger.error(
            "Could not connect to PostgreSQL",
            database_url=db_config.to_url(include_password=False),
            error=str(e),
        )
        raise

    store = PostgresLedgerStore(
        connection_factory,
        lock_timeout_ms=config.lock_timeout_ms,
        statement_timeout_ms=db_config.statement_timeout_ms,
    )
    logger.info(
        "PostgreSQL ledger store ready",
        database_url=db_config.to_url(include_password=False),
    )
    return store


def get_ledger_store() -> LedgerStore:
    """Get the shared ledger store instance."""
    global _store
    with _lock:
        if _store is None:
            _store = _create_ledger_store(LedgerConfig.from_env())
        return _store


def get_ledger() -> LedgerService:
    """Get the shared ledger service."""
    global _ledger
    store = get_ledger_store()
    with _lock:
        if _ledger is None:
            _ledger = LedgerService(store=store)
        return _ledger


def get_autologger() -> AutoLogger:
    """Get the shared auto-logger. It is attached to the store on first use."""
    global _autologger
    ledger = get_ledger()
    with _lock:
        if _autologger is None:
            _autologger = AutoLogger(ledger)
            _autologger.attach()
        return _autologger


def get_anchor_service() -> RootAnchorService:
    global _anchor_service
    store = get_ledger_store()
    with _lock:
        if _anchor_service is None:
            _anchor_service = RootAnchorService(store)
        return _anchor_service


def get_scheduler() -> AnchorScheduler:
    global _scheduler
    anchor_service = get_anchor_service()
    with _lock:
        if _scheduler is None:
            _scheduler = AnchorScheduler(anchor_service)
        return _scheduler


def get_verifier() -> ChainVerifier:
    return ChainVerifier(get_ledger_store())


def reset_for_tests(store: Optional[LedgerStore] = None) -> None:
    """Drop every shared instance (for testing only). Optionally install a store."""
    global _store, _ledger, _autologger, _anchor_service, _scheduler
    with _lock:
        if _scheduler is not None:
            _scheduler.stop()
        if _autologger is not None:
            _autologger.detach()
        _store = store
        _ledger = None
        _autologger = None
        _anchor_service = None
        _scheduler = None
