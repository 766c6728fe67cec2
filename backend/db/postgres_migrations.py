"""PostgreSQL schema creation and versioning (mirrors sqlite_migrations)."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("recall.db")

SCHEMA_VERSION = 1

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (NOW()::text)
);

CREATE TABLE IF NOT EXISTS sessions (
    id                 TEXT PRIMARY KEY,
    agent              TEXT NOT NULL DEFAULT 'unknown',
    model              TEXT,
    project_path       TEXT NOT NULL DEFAULT '',
    cwd                TEXT NOT NULL DEFAULT '',
    started_at         TEXT NOT NULL,
    ended_at           TEXT,
    frame_count        INTEGER NOT NULL DEFAULT 0,
    files_touched_json TEXT NOT NULL DEFAULT '[]',
    first_user_message TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions(started_at);
CREATE INDEX IF NOT EXISTS idx_sessions_agent   ON sessions(agent);

CREATE TABLE IF NOT EXISTS work_units (
    id                 TEXT PRIMARY KEY,
    name               TEXT NOT NULL,
    project_path       TEXT NOT NULL DEFAULT '',
    agents_json        TEXT NOT NULL DEFAULT '[]',
    confidence         TEXT NOT NULL CHECK (confidence IN ('high', 'medium', 'low')),
    start_time         TEXT NOT NULL DEFAULT '',
    end_time           TEXT NOT NULL DEFAULT '',
    start_epoch        DOUBLE PRECISION NOT NULL DEFAULT 0,
    total_duration     INTEGER NOT NULL DEFAULT 0,
    total_frames       INTEGER NOT NULL DEFAULT 0,
    session_count      INTEGER NOT NULL DEFAULT 0,
    files_touched_json TEXT NOT NULL DEFAULT '[]',
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_units_project    ON work_units(project_path);
CREATE INDEX IF NOT EXISTS idx_work_units_confidence ON work_units(confidence);
CREATE INDEX IF NOT EXISTS idx_work_units_start      ON work_units(start_epoch);

CREATE TABLE IF NOT EXISTS work_unit_sessions (
    work_unit_id       TEXT NOT NULL REFERENCES work_units(id) ON DELETE CASCADE,
    session_id         TEXT NOT NULL,
    position           INTEGER NOT NULL DEFAULT 0,
    agent              TEXT NOT NULL DEFAULT 'unknown',
    model              TEXT,
    correlation_score  DOUBLE PRECISION NOT NULL DEFAULT 0,
    join_reason_json   TEXT NOT NULL DEFAULT '[]',
    pinned             INTEGER NOT NULL DEFAULT 0,
    start_time         TEXT NOT NULL DEFAULT '',
    end_time           TEXT,
    duration           INTEGER,
    frame_count        INTEGER NOT NULL DEFAULT 0,
    first_user_message TEXT,
    PRIMARY KEY (work_unit_id, session_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_wus_session ON work_unit_sessions(session_id);
CREATE INDEX IF NOT EXISTS idx_wus_unit_position ON work_unit_sessions(work_unit_id, position);
CREATE INDEX IF NOT EXISTS idx_wus_agent ON work_unit_sessions(agent);

CREATE TABLE IF NOT EXISTS app_metadata (
    entity_type TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL DEFAULT '',
    updated_at  TEXT NOT NULL DEFAULT (NOW()::text),
    PRIMARY KEY (entity_type, entity_id, key)
);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return

        logger.info(f"Running Postgres migrations: {current_version} → {SCHEMA_VERSION}")
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info(f"Postgres migrations complete (schema version {SCHEMA_VERSION})")
