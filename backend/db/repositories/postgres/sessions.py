"""PostgreSQL implementation of SessionRepository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import asyncpg

from backend.db.repositories.sessions import session_params
from backend.models import normalize_agent


class PostgresSessionRepository:
    """PostgreSQL-backed session metadata store."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def upsert(self, session_data: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        p = session_params(session_data)
        query = """
            INSERT INTO sessions (
                id, agent, model, project_path, cwd,
                started_at, ended_at, frame_count, files_touched_json,
                first_user_message, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT(id) DO UPDATE SET
                agent=EXCLUDED.agent, model=EXCLUDED.model,
                project_path=EXCLUDED.project_path, cwd=EXCLUDED.cwd,
                started_at=EXCLUDED.started_at, ended_at=EXCLUDED.ended_at,
                frame_count=EXCLUDED.frame_count,
                files_touched_json=EXCLUDED.files_touched_json,
                first_user_message=EXCLUDED.first_user_message,
                updated_at=EXCLUDED.updated_at
        """
        await self.db.execute(
            query,
            p["id"], p["agent"], p["model"], p["project_path"], p["cwd"],
            p["started_at"], p["ended_at"], p["frame_count"], p["files_touched_json"],
            p["first_user_message"], now, now,
        )

    async def get_by_id(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sessions WHERE id = $1", session_id)
        if not row:
            return None
        return dict(row)

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM sessions ORDER BY started_at, id")
        return [dict(r) for r in rows]

    async def list_paginated(
        self, offset: int, limit: int, filters: dict | None = None,
    ) -> list[dict]:
        where, params = self._where(filters or {})
        n = len(params)
        query = f"SELECT * FROM sessions{where} ORDER BY started_at DESC, id LIMIT ${n + 1} OFFSET ${n + 2}"
        rows = await self.db.fetch(query, *params, limit, offset)
        return [dict(r) for r in rows]

    async def count(self, filters: dict | None = None) -> int:
        where, params = self._where(filters or {})
        return await self.db.fetchval(f"SELECT COUNT(*) FROM sessions{where}", *params) or 0

    async def delete(self, session_id: str) -> bool:
        result = await self.db.execute("DELETE FROM sessions WHERE id = $1", session_id)
        return not result.endswith(" 0")

    def _where(self, filters: dict) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.get("agent"):
            params.append(normalize_agent(filters["agent"]))
            clauses.append(f"agent = ${len(params)}")
        if filters.get("project"):
            params.append(f"%{str(filters['project']).lower()}%")
            clauses.append(f"LOWER(project_path) LIKE ${len(params)}")
        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), params
