"""Schema setup for whichever backend the connection belongs to."""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from backend.db import sqlite_migrations

logger = logging.getLogger("recall.db")


async def run_migrations(db: Any) -> None:
    """Create or upgrade the session and work unit tables."""
    if isinstance(db, aiosqlite.Connection):
        await sqlite_migrations.run_migrations(db)
        return

    # Anything else is an asyncpg pool; importing late keeps asyncpg optional.
    from backend.db import postgres_migrations

    await postgres_migrations.run_migrations(db)
