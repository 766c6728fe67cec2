"""Process-wide database handle for the Recall backend.

SQLite (WAL, foreign keys on) unless ``RECALL_DB_BACKEND=postgres``, in which
case an asyncpg pool is opened against ``RECALL_DATABASE_URL``.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from backend import config

logger = logging.getLogger("recall.db")

DbConnection = Union[aiosqlite.Connection, Any]  # Any covers asyncpg.Pool

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)

_connection: DbConnection | None = None


async def open_sqlite(path: str | Path) -> aiosqlite.Connection:
    """Open a SQLite store with the pragmas the repositories rely on."""
    target = str(path)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    for pragma in _SQLITE_PRAGMAS:
        await conn.execute(pragma)
    return conn


async def _open_postgres(url: str):
    if asyncpg is None:
        raise RuntimeError("RECALL_DB_BACKEND=postgres needs the asyncpg package (install the 'postgres' extra)")
    return await asyncpg.create_pool(url)


def backend_name(db: DbConnection | None) -> str:
    if db is None:
        return "disconnected"
    if isinstance(db, aiosqlite.Connection):
        return "sqlite"
    return "postgres"


async def get_connection() -> DbConnection:
    """Return the shared connection (or pool), opening it on first use."""
    global _connection
    if _connection is None:
        if config.DB_BACKEND == "postgres":
            _connection = await _open_postgres(config.DATABASE_URL)
            logger.info("Connected to PostgreSQL")
        else:
            _connection = await open_sqlite(config.DB_PATH)
            logger.info("Connected to SQLite store at %s", config.DB_PATH)
    return _connection


async def close_connection() -> None:
    global _connection
    if _connection is None:
        return
    db, _connection = _connection, None
    await db.close()
    logger.info("Database connection closed")
