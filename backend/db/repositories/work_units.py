"""SQLite implementation of WorkUnitRepository.

A unit row carries the derived aggregates; its memberships live in
``work_unit_sessions`` ordered by ``position``. Every write that touches more
than one row runs in a single transaction and is rolled back on failure, so a
reader never observes a unit without its memberships.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import aiosqlite

from backend.date_utils import iso_to_epoch
from backend.models import WorkUnit, WorkUnitSession, normalize_agent, normalize_reasons

logger = logging.getLogger("recall.db")

METADATA_ENTITY_TYPE = "work_units"
METADATA_ENTITY_ID = "global"


def _load_json_list(raw: Any) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def unit_row_params(unit: WorkUnit) -> tuple:
    return (
        unit.id,
        unit.name,
        unit.projectPath,
        json.dumps(list(unit.agents)),
        unit.confidence,
        unit.startTime,
        unit.endTime,
        iso_to_epoch(unit.startTime),
        unit.totalDuration,
        unit.totalFrames,
        len(unit.sessions),
        json.dumps(list(unit.filesTouched)),
        unit.createdAt,
        unit.updatedAt,
    )


def membership_row_params(unit_id: str, position: int, member: WorkUnitSession) -> tuple:
    return (
        unit_id,
        member.sessionId,
        position,
        member.agent,
        member.model,
        float(member.correlationScore),
        json.dumps(list(member.joinReason)),
        1 if member.pinned else 0,
        member.startTime,
        member.endTime,
        member.duration,
        member.frameCount,
        member.firstUserMessage,
    )


def row_to_membership(row: dict) -> WorkUnitSession:
    reasons = normalize_reasons(_load_json_list(row.get("join_reason_json")))
    if row.get("pinned") and "manual_override" not in reasons:
        reasons = normalize_reasons([*reasons, "manual_override"])
    return WorkUnitSession(
        sessionId=row["session_id"],
        agent=normalize_agent(row.get("agent")),
        model=row.get("model") or None,
        correlationScore=float(row.get("correlation_score") or 0.0),
        joinReason=reasons or ["manual_override"],
        startTime=row.get("start_time") or "",
        endTime=row.get("end_time") or None,
        duration=row.get("duration"),
        frameCount=int(row.get("frame_count") or 0),
        firstUserMessage=row.get("first_user_message") or None,
    )


def row_to_work_unit(row: dict, member_rows: Iterable[dict]) -> WorkUnit:
    members = [row_to_membership(m) for m in sorted(member_rows, key=lambda m: m.get("position") or 0)]
    agents = [normalize_agent(a) for a in _load_json_list(row.get("agents_json"))]
    return WorkUnit(
        id=row["id"],
        name=row.get("name") or "",
        projectPath=row.get("project_path") or "",
        sessions=members,
        agents=agents,
        confidence=row.get("confidence") or "low",
        startTime=row.get("start_time") or "",
        endTime=row.get("end_time") or "",
        totalDuration=int(row.get("total_duration") or 0),
        totalFrames=int(row.get("total_frames") or 0),
        filesTouched=[str(p) for p in _load_json_list(row.get("files_touched_json"))],
        createdAt=row.get("created_at") or "",
        updatedAt=row.get("updated_at") or "",
    )


def unit_filter_clauses(filters: dict | None, placeholder) -> tuple[list[str], list[Any]]:
    """Build WHERE clauses for list filters.

    ``placeholder`` maps a 1-based parameter index to the driver's marker.
    """
    filters = filters or {}
    clauses: list[str] = []
    params: list[Any] = []
    confidence = str(filters.get("confidence") or "").strip().lower()
    if confidence:
        params.append(confidence)
        clauses.append(f"confidence = {placeholder(len(params))}")
    agent = str(filters.get("agent") or "").strip()
    if agent:
        params.append(f'%"{normalize_agent(agent)}"%')
        clauses.append(f"agents_json LIKE {placeholder(len(params))}")
    project = str(filters.get("project") or "").strip()
    if project:
        params.append(f"%{project.lower()}%")
        clauses.append(f"LOWER(project_path) LIKE {placeholder(len(params))}")
    return clauses, params


_UNIT_INSERT_COLUMNS = """
    id, name, project_path, agents_json, confidence,
    start_time, end_time, start_epoch, total_duration, total_frames,
    session_count, files_touched_json, created_at, updated_at
"""

_MEMBERSHIP_INSERT_COLUMNS = """
    work_unit_id, session_id, position, agent, model,
    correlation_score, join_reason_json, pinned,
    start_time, end_time, duration, frame_count, first_user_message
"""


class SqliteWorkUnitRepository:
    """SQLite-backed work unit storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Reads ───────────────────────────────────────────────────────

    async def _attach_members(self, rows: list[dict]) -> list[WorkUnit]:
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        marks = ",".join("?" for _ in ids)
        grouped: dict[str, list[dict]] = {uid: [] for uid in ids}
        async with self.db.execute(
            f"SELECT * FROM work_unit_sessions WHERE work_unit_id IN ({marks}) ORDER BY work_unit_id, position",
            ids,
        ) as cur:
            for member in await cur.fetchall():
                member = dict(member)
                grouped[member["work_unit_id"]].append(member)
        units = []
        for row in rows:
            if not grouped[row["id"]]:
                logger.warning("Work unit %s has no memberships; skipping", row["id"])
                continue
            units.append(row_to_work_unit(row, grouped[row["id"]]))
        return units

    async def list_units(self, filters: dict | None = None, offset: int = 0, limit: int = 50) -> list[WorkUnit]:
        clauses, params = unit_filter_clauses(filters, lambda _: "?")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(
            f"SELECT * FROM work_units{where} ORDER BY start_epoch DESC, id LIMIT ? OFFSET ?",
            (*params, limit, offset),
        ) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        return await self._attach_members(rows)

    async def count_units(self, filters: dict | None = None) -> int:
        clauses, params = unit_filter_clauses(filters, lambda _: "?")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self.db.execute(f"SELECT COUNT(*) FROM work_units{where}", params) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def count_ungrouped(self) -> int:
        async with self.db.execute(
            """
            SELECT COUNT(*) FROM sessions s
            WHERE NOT EXISTS (
                SELECT 1 FROM work_unit_sessions m WHERE m.session_id = s.id
            )
            """
        ) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def list_all(self) -> list[WorkUnit]:
        async with self.db.execute("SELECT * FROM work_units ORDER BY id") as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        return await self._attach_members(rows)

    async def get_by_id(self, unit_id: str) -> WorkUnit | None:
        async with self.db.execute("SELECT * FROM work_units WHERE id = ?", (unit_id,)) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        units = await self._attach_members([dict(row)])
        return units[0] if units else None

    async def get_by_session_id(self, session_id: str) -> WorkUnit | None:
        async with self.db.execute(
            "SELECT work_unit_id FROM work_unit_sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return await self.get_by_id(row[0])

    # ── Writes ──────────────────────────────────────────────────────

    async def _delete_rows(self, unit_id: str) -> int:
        # Memberships are removed explicitly; foreign_keys may be off.
        await self.db.execute("DELETE FROM work_unit_sessions WHERE work_unit_id = ?", (unit_id,))
        async with self.db.execute("DELETE FROM work_units WHERE id = ?", (unit_id,)) as cur:
            return cur.rowcount

    async def _insert_unit(self, unit: WorkUnit) -> None:
        await self.db.execute(
            f"INSERT INTO work_units ({_UNIT_INSERT_COLUMNS}) VALUES ({','.join('?' * 14)})",
            unit_row_params(unit),
        )
        await self.db.executemany(
            f"INSERT INTO work_unit_sessions ({_MEMBERSHIP_INSERT_COLUMNS}) VALUES ({','.join('?' * 13)})",
            [membership_row_params(unit.id, pos, m) for pos, m in enumerate(unit.sessions)],
        )

    async def apply_changes(self, saved: list[WorkUnit], deleted_ids: Iterable[str] = ()) -> None:
        """Save and delete several units atomically."""
        try:
            for unit_id in deleted_ids:
                await self._delete_rows(unit_id)
            # Clear every touched unit before inserting so sessions can move between them.
            for unit in saved:
                await self._delete_rows(unit.id)
            for unit in saved:
                await self._insert_unit(unit)
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

    async def save_unit(self, unit: WorkUnit) -> None:
        await self.apply_changes([unit])

    async def delete_unit(self, unit_id: str) -> bool:
        try:
            deleted = await self._delete_rows(unit_id)
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        return deleted > 0

    async def replace_all(self, units: list[WorkUnit], metadata: dict[str, Any] | None = None) -> None:
        """Swap the full set of units, plus any metadata rows, in one transaction."""
        try:
            await self.db.execute("DELETE FROM work_unit_sessions")
            await self.db.execute("DELETE FROM work_units")
            for unit in units:
                await self._insert_unit(unit)
            for key, value in (metadata or {}).items():
                await self._write_metadata(key, value)
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        logger.debug("Replaced work unit set (%d units)", len(units))

    # ── Metadata ────────────────────────────────────────────────────

    async def get_metadata(self, key: str) -> Any:
        async with self.db.execute(
            """
            SELECT value
            FROM app_metadata
            WHERE entity_type = ? AND entity_id = ? AND key = ?
            LIMIT 1
            """,
            (METADATA_ENTITY_TYPE, METADATA_ENTITY_ID, key),
        ) as cur:
            row = await cur.fetchone()
        if not row or not row[0]:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Ignoring unreadable work unit metadata %s", key)
            return None

    async def _write_metadata(self, key: str, value: Any) -> None:
        await self.db.execute(
            """
            INSERT INTO app_metadata (entity_type, entity_id, key, value, updated_at)
            VALUES (?, ?, ?, ?, datetime('now'))
            ON CONFLICT(entity_type, entity_id, key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (METADATA_ENTITY_TYPE, METADATA_ENTITY_ID, key, json.dumps(value)),
        )

    async def set_metadata(self, key: str, value: Any) -> None:
        try:
            await self._write_metadata(key, value)
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
