"""Work unit API: listing, stats, recompute and manual overrides."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from backend.models import (
    RecomputeAbortResponse,
    RecomputeRequest,
    RecomputeResponse,
    RecomputeStatus,
    WorkUnitConfidence,
    WorkUnitCreateRequest,
    WorkUnitDetailsResponse,
    WorkUnitListResponse,
    WorkUnitOverrideRequest,
    WorkUnitOverrideResponse,
    WorkUnitSessionPage,
    WorkUnitStats,
)
from backend.services.work_units import (
    InvalidSessionReference,
    LastMemberError,
    RecomputeAborted,
    RecomputeInProgress,
    SessionNotFound,
    WorkUnitError,
    WorkUnitNotFound,
)

logger = logging.getLogger("recall.work_units")

work_units_router = APIRouter(prefix="/api/work-units", tags=["work-units"])


def _get_service(request: Request):
    service = getattr(request.app.state, "work_unit_service", None)
    if not service:
        raise HTTPException(status_code=503, detail="Work unit service not initialized")
    return service


def _http_error(exc: WorkUnitError) -> HTTPException:
    if isinstance(exc, (WorkUnitNotFound, SessionNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (LastMemberError, RecomputeInProgress, RecomputeAborted)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidSessionReference):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@work_units_router.get("", response_model=WorkUnitListResponse)
async def list_work_units(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    confidence: WorkUnitConfidence | None = Query(None, description="Exact confidence tier"),
    agent: str | None = Query(None, description="Units involving this agent"),
    project: str | None = Query(None, description="Case-insensitive project path substring"),
    includeUngrouped: bool = Query(True, description="Include the ungrouped session count"),
):
    """Return paginated work units, newest first."""
    service = _get_service(request)
    filters = {}
    if confidence: filters["confidence"] = confidence
    if agent: filters["agent"] = agent
    if project: filters["project"] = project
    return await service.list_units(filters, offset, limit, include_ungrouped=includeUngrouped)


@work_units_router.get("/stats", response_model=WorkUnitStats)
async def get_work_unit_stats(request: Request):
    return await _get_service(request).stats()


@work_units_router.get("/recompute/status", response_model=RecomputeStatus)
async def get_recompute_status(request: Request):
    return await _get_service(request).recompute_status()


@work_units_router.post("/recompute", response_model=RecomputeResponse)
async def recompute_work_units(request: Request, body: RecomputeRequest | None = None):
    """Run a full grouping pass; a no-op when nothing changed unless forced."""
    service = _get_service(request)
    force = body.force if body else False
    try:
        return await service.recompute(force=force)
    except WorkUnitError as exc:
        raise _http_error(exc) from exc


@work_units_router.post("/recompute/abort", response_model=RecomputeAbortResponse)
async def abort_recompute(request: Request):
    aborted = await _get_service(request).abort_recompute()
    if aborted:
        return RecomputeAbortResponse(aborted=True, message="Recompute cancelled before commit")
    return RecomputeAbortResponse(aborted=False, message="No abortable recompute in flight")


@work_units_router.post("", response_model=WorkUnitOverrideResponse, status_code=201)
async def create_work_unit(request: Request, body: WorkUnitCreateRequest):
    """Pin a session into a new single-session work unit."""
    service = _get_service(request)
    try:
        unit = await service.create_unit(body.sessionId)
    except WorkUnitError as exc:
        raise _http_error(exc) from exc
    return WorkUnitOverrideResponse(workUnit=unit, message=f"Created {unit.id}")


@work_units_router.get("/{unit_id}", response_model=WorkUnitDetailsResponse)
async def get_work_unit(request: Request, unit_id: str):
    try:
        return await _get_service(request).get_unit(unit_id)
    except WorkUnitError as exc:
        raise _http_error(exc) from exc


@work_units_router.get("/{unit_id}/sessions", response_model=WorkUnitSessionPage)
async def get_work_unit_sessions(
    request: Request,
    unit_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    try:
        return await _get_service(request).get_unit_sessions(unit_id, offset, limit)
    except WorkUnitError as exc:
        raise _http_error(exc) from exc


@work_units_router.patch("/{unit_id}", response_model=WorkUnitOverrideResponse)
async def update_work_unit(request: Request, unit_id: str, body: WorkUnitOverrideRequest):
    """Manually add a session to, or remove one from, a work unit."""
    service = _get_service(request)
    try:
        if body.action == "add":
            unit = await service.add_session(unit_id, body.sessionId)
            message = f"Added {body.sessionId} to {unit_id}"
        else:
            unit = await service.remove_session(unit_id, body.sessionId)
            message = f"Removed {body.sessionId} from {unit_id}"
    except WorkUnitError as exc:
        raise _http_error(exc) from exc
    return WorkUnitOverrideResponse(workUnit=unit, message=message)


@work_units_router.delete("/{unit_id}", response_model=WorkUnitOverrideResponse)
async def delete_work_unit(request: Request, unit_id: str):
    try:
        await _get_service(request).delete_unit(unit_id)
    except WorkUnitError as exc:
        raise _http_error(exc) from exc
    return WorkUnitOverrideResponse(message=f"Deleted {unit_id}")
