"""
Storage layer - Log Store and Incident Store.

The engines depend only on the abstract LogStore and IncidentStore. Two
backends ship with the package:

- memory: thread-safe in-process stores (default)
- duckdb: both stores in one local DuckDB database
"""

from typing import Optional

from loglens.config import Settings, get_settings

from .base import IncidentStore, LogStore
from .duckdb_storage import DuckDBDatabase, DuckDBIncidentStore, DuckDBLogStore
from .memory import InMemoryIncidentStore, InMemoryLogStore


def create_stores(settings: Optional[Settings] = None) -> tuple[LogStore, IncidentStore]:
    """
    Build a fresh pair of stores for the configured backend.

    Args:
        settings: Settings to use (defaults to the cached environment settings)

    Returns:
        (log_store, incident_store)
    """
    settings = settings or get_settings()
    if settings.storage_backend == "duckdb":
        database = DuckDBDatabase(
            db_path=settings.db_path,
            lock_timeout_seconds=settings.store_timeout_seconds,
        )
        return DuckDBLogStore(database), DuckDBIncidentStore(database)
    return (
        InMemoryLogStore(timeout_seconds=settings.store_timeout_seconds),
        InMemoryIncidentStore(timeout_seconds=settings.store_timeout_seconds),
    )


__all__ = [
    "LogStore",
    "IncidentStore",
    "InMemoryLogStore",
    "InMemoryIncidentStore",
    "DuckDBDatabase",
    "DuckDBLogStore",
    "DuckDBIncidentStore",
    "create_stores",
]
