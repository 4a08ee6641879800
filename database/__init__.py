"""
Database layer — Result Store persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.store)
  await store.put(result)
"""
from database.models import results_table, records_table
from database.session import create_engine, create_session_factory, session_scope, init_db
from database.store_base import BaseResultStore
from database.store import SqlResultStore
from database.store_memory import InMemoryResultStore
from database.store_file import FileResultStore
from database.store_factory import create_store

__all__ = [
    # Table definitions
    "results_table", "records_table",
    # Session management
    "create_engine", "create_session_factory", "session_scope", "init_db",
    # Store interface
    "BaseResultStore",
    # Store backends
    "SqlResultStore", "InMemoryResultStore", "FileResultStore",
    # Factory
    "create_store",
]
