"""Database schema creation and versioning.

All CREATE TABLE statements for the session and work-unit stores.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("recall.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions (metadata supplied by transcript ingestion) ────────
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

-- ── 2. Work units ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS work_units (
    id                 TEXT PRIMARY KEY,
    name               TEXT NOT NULL,
    project_path       TEXT NOT NULL DEFAULT '',
    agents_json        TEXT NOT NULL DEFAULT '[]',
    confidence         TEXT NOT NULL CHECK (confidence IN ('high', 'medium', 'low')),
    start_time         TEXT NOT NULL DEFAULT '',
    end_time           TEXT NOT NULL DEFAULT '',
    start_epoch        REAL NOT NULL DEFAULT 0,
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
    correlation_score  REAL NOT NULL DEFAULT 0,
    join_reason_json   TEXT NOT NULL DEFAULT '[]',
    pinned             INTEGER NOT NULL DEFAULT 0,
    start_time         TEXT NOT NULL DEFAULT '',
    end_time           TEXT,
    duration           INTEGER,
    frame_count        INTEGER NOT NULL DEFAULT 0,
    first_user_message TEXT,
    PRIMARY KEY (work_unit_id, session_id)
);

-- One membership per session across all units.
CREATE UNIQUE INDEX IF NOT EXISTS idx_wus_session ON work_unit_sessions(session_id);
CREATE INDEX IF NOT EXISTS idx_wus_unit_position ON work_unit_sessions(work_unit_id, position);
CREATE INDEX IF NOT EXISTS idx_wus_agent ON work_unit_sessions(agent);

-- ── 3. Key/value metadata (recompute bookkeeping) ──────────────────
CREATE TABLE IF NOT EXISTS app_metadata (
    entity_type TEXT NOT NULL,
    entity_id   TEXT NOT NULL,
    key         TEXT NOT NULL,
    value       TEXT NOT NULL DEFAULT '',
    updated_at  TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (entity_type, entity_id, key)
);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.Error:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete (schema version {SCHEMA_VERSION})")
