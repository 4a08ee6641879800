"""
SQLAlchemy table definitions — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Table names are deployment configuration (RESULTS_TABLE, RECORDS_TABLE),
so each backend builds its table by name on its own MetaData instead of
mapping a fixed declarative class.

  - Results are keyed by the composite store key ``RES#{id}#{date}`` so an
    upsert replaces the previous attempt of the same day.
  - JSON payloads are stored as TEXT, matching the string-typed store
    conventions of the key-value backends.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Integer, MetaData, String, Table, Text

DEFAULT_RESULTS_TABLE = "dispatch_results"
DEFAULT_RECORDS_TABLE = "records"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _index_name(table: str, column: str) -> str:
    return f"ix_{re.sub(r'[^0-9A-Za-z_]', '_', table)}_{column}"


def results_table(name: str = DEFAULT_RESULTS_TABLE,
                  metadata: Optional[MetaData] = None) -> Table:
    """Dispatch Result rows, one per (job id, date)."""
    metadata = metadata if metadata is not None else MetaData()
    return Table(
        name,
        metadata,
        Column("pk", String(320), primary_key=True),
        Column("id", String(256), nullable=False),
        Column("date", String(10), nullable=False),
        Column("status", String(16), nullable=False),
        Column("http_status", Integer, nullable=False),
        Column("latency_ms", Integer, nullable=False),
        Column("payload", Text, nullable=True),
        Column("error", Text, nullable=True),
        Column("updated_at", String(40), default=""),
        Index(_index_name(name, "date"), "date"),
    )


def records_table(name: str = DEFAULT_RECORDS_TABLE,
                  metadata: Optional[MetaData] = None) -> Table:
    """Candidate records read by the daily dispatch."""
    metadata = metadata if metadata is not None else MetaData()
    return Table(
        name,
        metadata,
        Column("id", String(256), primary_key=True),
        Column("provider", String(128), nullable=True),
        Column("endpoint", String(512), nullable=True),
        Column("body", Text, nullable=True),
        Column("created_at", DateTime(timezone=True), default=_utcnow),
    )
