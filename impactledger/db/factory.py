"""
Shared Store Instance

Holds the process-wide credit store and ledger.
Supports both in-memory (development) and PostgreSQL (production) modes.

Mode is determined by environment variables:
- IMPACTLEDGER_STORE_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL or DATABASE_HOST: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

A configured database that cannot be reached is an error. There is no
fallback to memory.
"""

from threading import Lock
from typing import Optional

from ..core.ledger import CreditLedger
from ..errors import StoreError
from ..observability import get_logger
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver
from .store import CreditStore, InMemoryCreditStore, PostgresCreditStore

logger = get_logger(__name__)

_lock = Lock()
_store: Optional[CreditStore] = None
_ledger: Optional[CreditLedger] = None


def create_credit_store() -> CreditStore:
    """
    Create the appropriate CreditStore based on configuration.

    Returns:
        InMemoryCreditStore for development/testing
        PostgresCreditStore when a database is configured
    """
    driver = get_store_driver()

    if driver == StoreDriver.MEMORY:
        logger.info("Using in-memory credit store (no persistence)", driver=driver.value)
        return InMemoryCreditStore()

    db_url = get_database_url()
    if db_url is None:
        raise StoreError(f"Driver is {driver.value} but no database is configured")

    config = DatabaseConfig.from_url(db_url) if "://" in db_url else DatabaseConfig.from_env()
    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: DatabaseConfig) -> PostgresCreditStore:
    """Create PostgresCreditStore with psycopg2."""
    import psycopg2

    def connection_factory():
        return psycopg2.connect(config.to_dsn())

    try:
        test_conn = connection_factory()
        test_conn.close()
    except psycopg2.Error as e:
        logger.error(
            "Could not connect to PostgreSQL",
            host=f"{config.host}:{config.port}/{config.database}",
            error=str(e),
        )
        raise StoreError(f"Could not connect to PostgreSQL: {e}") from e

    logger.info(
        "PostgreSQL connection established",
        driver=StoreDriver.PSYCOPG2.value,
        host=f"{config.host}:{config.port}/{config.database}",
    )
    return PostgresCreditStore(
        connection_factory,
        lock_timeout_ms=config.lock_timeout_ms,
        statement_timeout_ms=config.statement_timeout_ms,
    )


def get_credit_store() -> CreditStore:
    """Get the shared credit store, creating it on first use."""
    global _store
    with _lock:
        if _store is None:
            _store = create_credit_store()
        return _store


def get_ledger() -> CreditLedger:
    """Get the shared credit ledger over the shared store."""
    global _ledger
    store = get_credit_store()
    with _lock:
        if _ledger is None or _ledger.store is not store:
            _ledger = CreditLedger(store)
        return _ledger


def use_credit_store(store: Optional[CreditStore]) -> None:
    """Replace the shared store (None resets to configuration on next use)."""
    global _store, _ledger
    with _lock:
        _store = store
        _ledger = None
