"""
Async database engine helpers — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Each SQL-backed store owns its engine; there is no process-wide engine.

Usage:
    engine = create_engine(url)
    factory = create_session_factory(engine)
    async with session_scope(factory) as db:
        ...
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

logger = structlog.get_logger()


_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# Server databases share one pool per store; results are small single-row upserts.
_SERVER_POOL = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _to_async_url(db_url: str) -> str:
    """Map a plain database URL onto its asyncio driver; async URLs pass through."""
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (db_url.endswith(":memory:") or db_url.endswith("://"))


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    if not db_url.startswith("sqlite"):
        return {"echo": echo, **_SERVER_POOL}

    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(db_url):
        # One shared connection, otherwise every session sees an empty database.
        kwargs["poolclass"] = StaticPool
    return kwargs


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    async_url = _to_async_url(db_url)
    engine = create_async_engine(async_url, **_engine_kwargs(async_url, echo))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=_safe_url(engine))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine, metadata: MetaData) -> None:
    """Create the tables in ``metadata``. Safe to call repeatedly."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(metadata.tables.keys()))
