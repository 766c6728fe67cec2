"""Session metadata API."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from backend.db.repositories.sessions import row_to_session
from backend.models import PaginatedResponse, Session, SessionWorkUnitResponse
from backend.services.work_units import SessionNotFound, WorkUnitNotFound

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_service(request: Request):
    service = getattr(request.app.state, "work_unit_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Work unit service not initialized")
    return service


@sessions_router.get("", response_model=PaginatedResponse[Session])
async def list_sessions(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    agent: str | None = Query(None, description="Filter by agent"),
    project: str | None = Query(None, description="Case-insensitive project path substring"),
):
    """Return paginated sessions, newest first."""
    repo = _get_service(request).session_repo
    filters = {}
    if agent: filters["agent"] = agent
    if project: filters["project"] = project

    rows = await repo.list_paginated(offset, limit, filters)
    total = await repo.count(filters)
    return PaginatedResponse(
        items=[row_to_session(row) for row in rows], total=total, offset=offset, limit=limit,
    )


@sessions_router.get("/{session_id}", response_model=Session)
async def get_session(request: Request, session_id: str):
    row = await _get_service(request).session_repo.get_by_id(session_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return row_to_session(row)


@sessions_router.get("/{session_id}/work-unit", response_model=SessionWorkUnitResponse)
async def get_session_work_unit(request: Request, session_id: str):
    """Return the work unit containing a session; 404 when it is ungrouped."""
    try:
        unit = await _get_service(request).get_unit_for_session(session_id)
    except (SessionNotFound, WorkUnitNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return SessionWorkUnitResponse(workUnit=unit)
