"""Durable persistence for the activity journal and the lease table."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import StepwrightConfig, load_config
from .inmemory import InMemoryStore
from .models import ActivityRecord, Lease
from .sqlite import SQLiteStore
from .store import DurableStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresStore = None  # type: ignore

logger = logging.getLogger(__name__)

_store_instance: DurableStore | None = None
_store_url: str | None = None

MEMORY_URL = "memory://"


def _sqlite_path(database_url: str) -> str:
    path = database_url[len("sqlite://") :]
    if path in (":memory:", "/:memory:"):
        return ":memory:"
    if not path:
        raise ValueError(f"SQLite URL names no database file: {database_url}")
    return path


def open_store(database_url: Optional[str]) -> DurableStore:
    """Open a fresh store for ``database_url``.

    ``None`` and ``memory://`` give an ``InMemoryStore``. ``sqlite:///abs.db``
    and ``sqlite://rel.db`` name a file; ``sqlite:///:memory:`` keeps the
    SQLite schema in memory. ``postgres://`` and ``postgresql://`` use asyncpg.
    """
    if not database_url or database_url == MEMORY_URL:
        return InMemoryStore()
    if database_url.startswith("sqlite://"):
        return SQLiteStore(_sqlite_path(database_url))
    if database_url.startswith(("postgres://", "postgresql://")):
        if PostgresStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_store(
    database_url: Optional[str] = None, config: Optional[StepwrightConfig] = None
) -> DurableStore:
    """Return the process-wide store, opening it on first use.

    The URL comes from ``database_url``, then ``STEPWRIGHT_DATABASE_URL`` or
    ``DATABASE_URL``, then the configuration. Asking again for the URL that
    is already open returns the same store; asking for another one replaces
    the cached store, which the previous caller remains responsible for
    closing. Argument-less calls reuse whatever is cached.
    """
    global _store_instance, _store_url
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPWRIGHT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if _store_instance is not None and database_url == _store_url:
        return _store_instance

    store = open_store(database_url)
    if _store_instance is not None:
        logger.info(f"Replacing cached store for {_store_url or MEMORY_URL} with {database_url or MEMORY_URL}")
    _store_instance, _store_url = store, database_url
    return store


__all__ = [
    "ActivityRecord",
    "DurableStore",
    "InMemoryStore",
    "Lease",
    "MEMORY_URL",
    "PostgresStore",
    "SQLiteStore",
    "get_store",
    "open_store",
]
