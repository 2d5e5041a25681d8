"""
Database Layer for the Impact Ledger

Provides:
- PostgreSQL schema (schema.sql)
- CreditStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration and shared-store construction
- JSON snapshots
"""

from .store import (
    CreditStore,
    InMemoryCreditStore,
    MetricScope,
    PostgresCreditStore,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "CreditStore",
    "InMemoryCreditStore",
    "MetricScope",
    "PostgresCreditStore",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
