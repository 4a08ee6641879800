"""
Store Factory — Create the right result store backend from configuration.

Configuration in settings.yaml:
    store:
      # Result store backend
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON file on disk (small deployments, demos)
      #   "sql"      — SQLAlchemy database at ``url``
      backend: "memory"
      table: "jobspread-results"           # RESULTS_TABLE
      url: "sqlite:///./jobspread.db"
      file_dir: "./data"

Usage:
    from database.store_factory import create_store
    store = create_store(settings.store)

Stores are created once per process by the application context and passed
to the consumer explicitly.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import StoreConfig
from database.store_base import BaseResultStore

logger = structlog.get_logger()


def create_store(config: Optional[StoreConfig] = None) -> BaseResultStore:
    """Factory: create the configured result store backend."""
    config = config or StoreConfig()
    backend = config.backend

    if backend == "sql":
        from database.store import SqlResultStore
        store = SqlResultStore(url=config.url, table=config.table)
        logger.info("store_created", backend="sql", table=config.table)

    elif backend == "file":
        from database.store_file import FileResultStore
        store = FileResultStore(data_dir=config.file_dir, table=config.table)
        logger.info("store_created", backend="file", data_dir=config.file_dir)

    else:  # "memory" or default
        from database.store_memory import InMemoryResultStore
        store = InMemoryResultStore(table=config.table)
        logger.info("store_created", backend="memory")

    return store
