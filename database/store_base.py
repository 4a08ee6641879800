"""
Abstract Result Store — Interface for all storage backends.

Implementations:
  - InMemoryResultStore (dict-based, single-process, no persistence)
  - FileResultStore     (JSON file on disk, single-process, durable)
  - SqlResultStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)

The store is a key-value table keyed by ``(job id, date)``. ``put`` is an
upsert: a second write for the same key replaces the first, which is what
makes at-least-once delivery safe. There is no read-modify-write.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import DispatchResult


class BaseResultStore(ABC):
    """Interface that all result store backends must implement."""

    @abstractmethod
    async def put(self, result: DispatchResult) -> None:
        """Upsert a result under (result.id, result.date)."""
        ...

    @abstractmethod
    async def get(self, job_id: str, date: str) -> Optional[DispatchResult]:
        ...

    @abstractmethod
    async def scan(self, limit: int = 100) -> list[DispatchResult]:
        """Bounded read of stored results, for inspection."""
        ...

    async def init(self) -> None:
        """Prepare the backend (create tables, files). Default: nothing."""
        return None

    async def close(self) -> None:
        return None
