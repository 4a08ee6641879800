"""
InMemoryResultStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlResultStore
  - Items are kept in their flattened store form (strings and numbers)
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseResultStore
from models.schemas import DispatchResult, result_key

logger = structlog.get_logger()


class InMemoryResultStore(BaseResultStore):

    def __init__(self, table: str = "jobspread-results"):
        self.table = table
        self._items: dict[str, dict[str, Any]] = {}     # pk → item
        self.write_count = 0
        logger.info("inmemory_result_store_initialized", table=table)

    async def put(self, result: DispatchResult) -> None:
        item = result.to_item()
        self._items[item["pk"]] = item
        self.write_count += 1

    async def get(self, job_id: str, date: str) -> Optional[DispatchResult]:
        item = self._items.get(result_key(job_id, date))
        return DispatchResult.from_item(item) if item else None

    async def scan(self, limit: int = 100) -> list[DispatchResult]:
        items = list(self._items.values())[:limit]
        return [DispatchResult.from_item(i) for i in items]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "results": len(self._items),
            "writes": self.write_count,
        }
