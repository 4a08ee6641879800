"""
FileResultStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    {table}.json     {pk: item, ...}

Features:
  - Survives process restarts (unlike InMemoryResultStore)
  - No external dependencies (no database server, no Redis)
  - Flushes the whole table on every write
  - Single-process only (no concurrent write safety)
"""
from __future__ import annotations

import json
import os
import structlog
from pathlib import Path

from database.store_memory import InMemoryResultStore
from models.schemas import DispatchResult

logger = structlog.get_logger()


class FileResultStore(InMemoryResultStore):
    """
    Extends InMemoryResultStore with JSON file persistence.

    On init: loads the table from disk.
    On every put: rewrites the table file atomically (tmp + rename).
    """

    def __init__(self, data_dir: str = "./data", table: str = "jobspread-results"):
        super().__init__(table=table)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_result_store_initialized",
                    data_dir=str(self._data_dir),
                    results=len(self._items))

    @property
    def path(self) -> Path:
        return self._data_dir / f"{self.table}.json"

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._items = data if isinstance(data, dict) else {}
        except (OSError, ValueError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            self._items = {}

    def flush(self):
        tmp = self.path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(self._items, f, indent=2, default=str)
        os.replace(tmp, self.path)

    async def put(self, result: DispatchResult) -> None:
        await super().put(result)
        self.flush()
