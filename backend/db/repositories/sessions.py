"""SQLite implementation of SessionRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from backend.date_utils import normalize_iso_timestamp
from backend.models import Session, normalize_agent


def _dedupe_paths(paths: Any) -> list[str]:
    if not isinstance(paths, (list, tuple, set, frozenset)):
        return []
    seen: set[str] = set()
    deduped: list[str] = []
    for raw in paths:
        value = str(raw or "").strip()
        if value and value not in seen:
            seen.add(value)
            deduped.append(value)
    return deduped


def session_params(session_data: dict) -> dict[str, Any]:
    """Normalize a camelCase session payload into column values."""
    session_id = str(session_data.get("sessionId") or session_data.get("id") or "").strip()
    if not session_id:
        raise ValueError("session payload is missing sessionId")
    started_at = normalize_iso_timestamp(session_data.get("startTime"))
    if not started_at:
        raise ValueError(f"session {session_id} has no usable startTime")
    try:
        frame_count = max(0, int(session_data.get("frameCount") or 0))
    except (TypeError, ValueError):
        frame_count = 0
    return {
        "id": session_id,
        "agent": normalize_agent(session_data.get("agent")),
        "model": (str(session_data.get("model") or "").strip() or None),
        "project_path": str(session_data.get("projectPath") or ""),
        "cwd": str(session_data.get("cwd") or ""),
        "started_at": started_at,
        "ended_at": normalize_iso_timestamp(session_data.get("endTime")) or None,
        "frame_count": frame_count,
        "files_touched_json": json.dumps(_dedupe_paths(session_data.get("filesTouched"))),
        "first_user_message": (str(session_data.get("firstUserMessage") or "").strip() or None),
    }


def row_to_session(row: dict) -> Session:
    try:
        files = json.loads(row.get("files_touched_json") or "[]")
    except (TypeError, ValueError):
        files = []
    return Session(
        sessionId=row["id"],
        agent=normalize_agent(row.get("agent")),
        model=row.get("model") or None,
        projectPath=row.get("project_path") or "",
        cwd=row.get("cwd") or "",
        startTime=row.get("started_at") or "",
        endTime=row.get("ended_at") or None,
        frameCount=max(0, int(row.get("frame_count") or 0)),
        filesTouched=_dedupe_paths(files),
        firstUserMessage=row.get("first_user_message") or None,
    )


class SqliteSessionRepository:
    """SQLite-backed session metadata store."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, session_data: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        p = session_params(session_data)
        await self.db.execute(
            """INSERT INTO sessions (
                id, agent, model, project_path, cwd,
                started_at, ended_at, frame_count, files_touched_json,
                first_user_message, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                agent=excluded.agent, model=excluded.model,
                project_path=excluded.project_path, cwd=excluded.cwd,
                started_at=excluded.started_at, ended_at=excluded.ended_at,
                frame_count=excluded.frame_count,
                files_touched_json=excluded.files_touched_json,
                first_user_message=excluded.first_user_message,
                updated_at=excluded.updated_at
            """,
            (
                p["id"], p["agent"], p["model"], p["project_path"], p["cwd"],
                p["started_at"], p["ended_at"], p["frame_count"], p["files_touched_json"],
                p["first_user_message"], now, now,
            ),
        )
        await self.db.commit()

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_all(self) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM sessions ORDER BY started_at, id"
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_paginated(
        self, offset: int, limit: int, filters: dict | None = None,
    ) -> list[dict]:
        where, params = self._where(filters or {})
        query = f"SELECT * FROM sessions{where} ORDER BY started_at DESC, id LIMIT ? OFFSET ?"
        async with self.db.execute(query, (*params, limit, offset)) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def count(self, filters: dict | None = None) -> int:
        where, params = self._where(filters or {})
        async with self.db.execute(f"SELECT COUNT(*) FROM sessions{where}", params) as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def delete(self, session_id: str) -> bool:
        async with self.db.execute("DELETE FROM sessions WHERE id = ?", (session_id,)) as cur:
            deleted = cur.rowcount > 0
        await self.db.commit()
        return deleted

    def _where(self, filters: dict) -> tuple[str, tuple]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.get("agent"):
            clauses.append("agent = ?")
            params.append(normalize_agent(filters["agent"]))
        if filters.get("project"):
            clauses.append("LOWER(project_path) LIKE ?")
            params.append(f"%{str(filters['project']).lower()}%")
        if not clauses:
            return "", ()
        return " WHERE " + " AND ".join(clauses), tuple(params)
