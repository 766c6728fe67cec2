"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from backend.db.repositories.sessions import SqliteSessionRepository
from backend.db.repositories.work_units import SqliteWorkUnitRepository


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from backend.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)

def get_work_unit_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteWorkUnitRepository(db)
    from backend.db.repositories.postgres.work_units import PostgresWorkUnitRepository
    return PostgresWorkUnitRepository(db)
