"""
SqlResultStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

The table name comes from configuration (RESULTS_TABLE). Upsert is an
UPDATE on the composite primary key followed by an INSERT when no row
matched, inside one transaction; that works the same on every dialect.
"""
from __future__ import annotations

import structlog
from typing import Any, Mapping, Optional

from sqlalchemy import insert, select, update

from database.models import DEFAULT_RESULTS_TABLE, results_table
from database.session import create_engine, create_session_factory, init_db, session_scope
from database.store_base import BaseResultStore
from models.schemas import DispatchResult, DispatchStatus, result_key

logger = structlog.get_logger()


class SqlResultStore(BaseResultStore):
    """
    Persistent result store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, url: str = "sqlite:///./jobspread.db",
                 table: str = DEFAULT_RESULTS_TABLE, echo: bool = False):
        self.url = url
        self.table = results_table(table)
        self._engine = create_engine(url, echo=echo)
        self._factory = create_session_factory(self._engine)

    async def init(self) -> None:
        await init_db(self._engine, self.table.metadata)

    async def close(self) -> None:
        await self._engine.dispose()

    async def put(self, result: DispatchResult) -> None:
        item = result.to_item()
        values: dict[str, Any] = {
            "pk": item["pk"],
            "id": item["id"],
            "date": item["date"],
            "status": item["status"],
            "http_status": item["httpStatus"],
            "latency_ms": item["latencyMs"],
            "payload": item.get("payload"),
            "error": item.get("error"),
            "updated_at": item["updatedAt"],
        }
        t = self.table
        async with session_scope(self._factory) as db:
            updated = await db.execute(update(t).where(t.c.pk == values["pk"]).values(**values))
            if updated.rowcount == 0:
                await db.execute(insert(t).values(**values))

    async def get(self, job_id: str, date: str) -> Optional[DispatchResult]:
        t = self.table
        async with session_scope(self._factory) as db:
            result = await db.execute(select(t).where(t.c.pk == result_key(job_id, date)))
            row = result.mappings().first()
            return self._row_to_result(row) if row else None

    async def scan(self, limit: int = 100) -> list[DispatchResult]:
        async with session_scope(self._factory) as db:
            result = await db.execute(select(self.table).limit(limit))
            return [self._row_to_result(r) for r in result.mappings()]

    @staticmethod
    def _row_to_result(row: Mapping[str, Any]) -> DispatchResult:
        return DispatchResult.from_item({
            "id": row["id"],
            "date": row["date"],
            "status": DispatchStatus(row["status"]).value,
            "httpStatus": row["http_status"],
            "latencyMs": row["latency_ms"],
            "payload": row["payload"],
            "error": row["error"],
            "updatedAt": row["updated_at"],
        })
