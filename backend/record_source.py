"""
Record Source — bounded read of the day's candidate records.

Raw rows are normalised through ``Record.from_raw`` so every backend applies
the same defaults: provider "default", id "rec-{index}", endpoint "/",
body parsed from JSON (empty object when absent or malformed).

Pagination beyond one page is left to the source system; a single read of
up to ``page_limit`` rows is what the dispatcher consumes per trigger.
"""
from __future__ import annotations

import abc
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select

from config.settings import SourceConfig
from database.models import DEFAULT_RECORDS_TABLE, records_table
from database.session import create_engine, create_session_factory, init_db, session_scope
from models.schemas import Record

logger = structlog.get_logger()


class RecordSource(abc.ABC):
    """Abstract base for all record sources."""

    @abc.abstractmethod
    async def read_raw(self, limit: int) -> list[dict[str, Any]]:
        """Return up to ``limit`` raw rows."""
        ...

    async def read(self, limit: int = 1000) -> list[Record]:
        rows = await self.read_raw(limit)
        return [Record.from_raw(raw, index=i) for i, raw in enumerate(rows[:limit])]

    async def init(self) -> None:
        return None

    async def close(self) -> None:
        return None


class InMemoryRecordSource(RecordSource):
    """Fixed list of rows; used in development and tests."""

    def __init__(self, rows: list[dict[str, Any]] = None):
        self._rows = list(rows or [])

    def add(self, row: dict[str, Any]) -> None:
        self._rows.append(row)

    async def read_raw(self, limit: int) -> list[dict[str, Any]]:
        return self._rows[:limit]


class FileRecordSource(RecordSource):
    """
    JSON file holding a list of rows:
        [{"id": "r1", "provider": "p1", "endpoint": "/x", "body": "{...}"}, ...]
    """

    def __init__(self, path: str = "./data/records.json"):
        self.path = Path(path)

    async def read_raw(self, limit: int) -> list[dict[str, Any]]:
        if not self.path.exists():
            logger.warning("record_file_missing", path=str(self.path))
            return []
        with open(self.path, "r") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"{self.path} must contain a JSON list of records")
        return [row for row in data if isinstance(row, dict)][:limit]


class SqlRecordSource(RecordSource):
    """Reads the configured records table (RECORDS_TABLE) through SQLAlchemy."""

    def __init__(self, url: str = "sqlite:///./jobspread.db", table: str = DEFAULT_RECORDS_TABLE):
        self.url = url
        self.table = records_table(table)
        self._engine = create_engine(url)
        self._factory = create_session_factory(self._engine)

    async def init(self) -> None:
        await init_db(self._engine, self.table.metadata)

    async def read_raw(self, limit: int) -> list[dict[str, Any]]:
        t = self.table
        async with session_scope(self._factory) as db:
            result = await db.execute(
                select(t.c.id, t.c.provider, t.c.endpoint, t.c.body)
                .order_by(t.c.created_at, t.c.id)
                .limit(limit)
            )
            return [dict(r) for r in result.mappings()]

    async def close(self) -> None:
        await self._engine.dispose()


def create_record_source(config: Optional[SourceConfig] = None) -> RecordSource:
    """Factory: create the configured record source backend."""
    config = config or SourceConfig()
    backend = config.backend

    if backend == "sql":
        source = SqlRecordSource(url=config.url, table=config.table)
    elif backend == "file":
        source = FileRecordSource(path=config.file_path)
    else:  # "memory" or default
        source = InMemoryRecordSource()

    logger.info("record_source_created", backend=backend, table=config.table)
    return source
