"""PostgreSQL implementation of WorkUnitRepository."""
from __future__ import annotations

import json
from typing import Any, Iterable

import asyncpg

from backend.db.repositories.work_units import (
    METADATA_ENTITY_ID,
    METADATA_ENTITY_TYPE,
    membership_row_params,
    row_to_work_unit,
    unit_filter_clauses,
    unit_row_params,
)
from backend.models import WorkUnit

_UNIT_INSERT = """
    INSERT INTO work_units (
        id, name, project_path, agents_json, confidence,
        start_time, end_time, start_epoch, total_duration, total_frames,
        session_count, files_touched_json, created_at, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
"""

_MEMBERSHIP_INSERT = """
    INSERT INTO work_unit_sessions (
        work_unit_id, session_id, position, agent, model,
        correlation_score, join_reason_json, pinned,
        start_time, end_time, duration, frame_count, first_user_message
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
"""


class PostgresWorkUnitRepository:
    """PostgreSQL-backed work unit storage."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def _attach_members(self, rows: list[dict]) -> list[WorkUnit]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        grouped: dict[str, list[dict]] = {uid: [] for uid in ids}
        members = await self.db.fetch(
            "SELECT * FROM work_unit_sessions WHERE work_unit_id = ANY($1::text[]) ORDER BY work_unit_id, position",
            ids,
        )
        for member in members:
            grouped[member["work_unit_id"]].append(dict(member))
        return [row_to_work_unit(row, grouped[row["id"]]) for row in rows if grouped[row["id"]]]

    async def list_units(self, filters: dict | None = None, offset: int = 0, limit: int = 50) -> list[WorkUnit]:
        clauses, params = unit_filter_clauses(filters, lambda i: f"${i}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        n = len(params)
        rows = await self.db.fetch(
            f"SELECT * FROM work_units{where} ORDER BY start_epoch DESC, id LIMIT ${n + 1} OFFSET ${n + 2}",
            *params, limit, offset,
        )
        return await self._attach_members([dict(r) for r in rows])

    async def count_units(self, filters: dict | None = None) -> int:
        clauses, params = unit_filter_clauses(filters, lambda i: f"${i}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self.db.fetchval(f"SELECT COUNT(*) FROM work_units{where}", *params) or 0

    async def count_ungrouped(self) -> int:
        return await self.db.fetchval(
            """
            SELECT COUNT(*) FROM sessions s
            WHERE NOT EXISTS (
                SELECT 1 FROM work_unit_sessions m WHERE m.session_id = s.id
            )
            """
        ) or 0

    async def list_all(self) -> list[WorkUnit]:
        rows = await self.db.fetch("SELECT * FROM work_units ORDER BY id")
        return await self._attach_members([dict(r) for r in rows])

    async def get_by_id(self, unit_id: str) -> WorkUnit | None:
        row = await self.db.fetchrow("SELECT * FROM work_units WHERE id = $1", unit_id)
        if not row:
            return None
        units = await self._attach_members([dict(row)])
        return units[0] if units else None

    async def get_by_session_id(self, session_id: str) -> WorkUnit | None:
        unit_id = await self.db.fetchval(
            "SELECT work_unit_id FROM work_unit_sessions WHERE session_id = $1", session_id
        )
        if not unit_id:
            return None
        return await self.get_by_id(unit_id)

    async def _insert_unit(self, conn: Any, unit: WorkUnit) -> None:
        await conn.execute(_UNIT_INSERT, *unit_row_params(unit))
        await conn.executemany(
            _MEMBERSHIP_INSERT,
            [membership_row_params(unit.id, pos, m) for pos, m in enumerate(unit.sessions)],
        )

    async def apply_changes(self, saved: list[WorkUnit], deleted_ids: Iterable[str] = ()) -> None:
        """Save and delete several units atomically."""
        doomed = list(deleted_ids) + [u.id for u in saved]
        async with self.db.acquire() as conn:
            async with conn.transaction():
                if doomed:
                    await conn.execute(
                        "DELETE FROM work_unit_sessions WHERE work_unit_id = ANY($1::text[])", doomed
                    )
                    await conn.execute("DELETE FROM work_units WHERE id = ANY($1::text[])", doomed)
                for unit in saved:
                    await self._insert_unit(conn, unit)

    async def save_unit(self, unit: WorkUnit) -> None:
        await self.apply_changes([unit])

    async def delete_unit(self, unit_id: str) -> bool:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM work_unit_sessions WHERE work_unit_id = $1", unit_id)
                result = await conn.execute("DELETE FROM work_units WHERE id = $1", unit_id)
        return not result.endswith(" 0")

    async def replace_all(self, units: list[WorkUnit], metadata: dict[str, Any] | None = None) -> None:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM work_unit_sessions")
                await conn.execute("DELETE FROM work_units")
                for unit in units:
                    await self._insert_unit(conn, unit)
                for key, value in (metadata or {}).items():
                    await self._write_metadata(conn, key, value)

    async def get_metadata(self, key: str) -> Any:
        raw = await self.db.fetchval(
            """
            SELECT value
            FROM app_metadata
            WHERE entity_type = $1 AND entity_id = $2 AND key = $3
            LIMIT 1
            """,
            METADATA_ENTITY_TYPE,
            METADATA_ENTITY_ID,
            key,
        )
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def _write_metadata(self, conn: Any, key: str, value: Any) -> None:
        await conn.execute(
            """
            INSERT INTO app_metadata (entity_type, entity_id, key, value, updated_at)
            VALUES ($1, $2, $3, $4, NOW()::text)
            ON CONFLICT(entity_type, entity_id, key) DO UPDATE SET
                value = EXCLUDED.value,
                updated_at = EXCLUDED.updated_at
            """,
            METADATA_ENTITY_TYPE,
            METADATA_ENTITY_ID,
            key,
            json.dumps(value),
        )

    async def set_metadata(self, key: str, value: Any) -> None:
        await self._write_metadata(self.db, key, value)
