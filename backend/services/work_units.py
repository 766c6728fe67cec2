"""Work unit service: recompute, manual overrides and read queries.

All store writes go through ``_commit_lock``. Manual edits bump
``_generation`` once committed; a recompute snapshots the generation together
with the sessions and units it reads, and redoes its pass if an edit landed
before its own commit.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any

from backend import config
from backend.correlation_scoring import CorrelationConfig
from backend.date_utils import now_iso
from backend.db.factory import get_session_repository, get_work_unit_repository
from backend.db.repositories.sessions import row_to_session
from backend.models import (
    RecomputeResponse,
    RecomputeStatus,
    Session,
    WorkUnit,
    WorkUnitDetailsResponse,
    WorkUnitListResponse,
    WorkUnitSession,
    WorkUnitSessionPage,
    WorkUnitStats,
)
from backend.observability import record_override, record_recompute, start_span
from backend.work_unit_grouping import (
    GroupingResult,
    build_work_unit,
    compute_work_units,
    membership_for_session,
    score_session_against_members,
    unit_id_for_seed,
)
from backend.work_unit_stats import compute_work_unit_stats

logger = logging.getLogger("recall.work_units")

LAST_RECOMPUTE_KEY = "last_recompute"


class WorkUnitError(Exception):
    """Base class for work unit operation failures."""


class WorkUnitNotFound(WorkUnitError):
    pass


class SessionNotFound(WorkUnitError):
    pass


class LastMemberError(WorkUnitError):
    pass


class RecomputeInProgress(WorkUnitError):
    pass


class RecomputeAborted(WorkUnitError):
    pass


class InvalidSessionReference(WorkUnitError):
    pass


def recompute_fingerprint(sessions: list[Session], units: list[WorkUnit], cfg: CorrelationConfig) -> str:
    """Hash of everything a grouping pass reads.

    Sessions contribute their correlation fields; units contribute only their
    memberships, so a manual edit since the last pass changes the hash.
    """
    payload = {
        "config": cfg.as_dict(),
        "sessions": [
            s.model_dump() for s in sorted(sessions, key=lambda s: s.sessionId)
        ],
        "units": [
            [unit.id, sorted((m.sessionId, m.pinned) for m in unit.sessions)]
            for unit in sorted(units, key=lambda u: u.id)
        ],
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class WorkUnitService:
    def __init__(self, db: Any, cfg: CorrelationConfig | None = None, *, commit_retries: int | None = None):
        self.db = db
        self.cfg = cfg or CorrelationConfig.from_settings()
        self.session_repo = get_session_repository(db)
        self.unit_repo = get_work_unit_repository(db)
        self.commit_retries = max(0, config.RECOMPUTE_COMMIT_RETRIES if commit_retries is None else commit_retries)
        self._commit_lock = asyncio.Lock()
        self._generation = 0
        self._recompute_task: asyncio.Task | None = None
        self._abort_requested = False
        self._committing = False

    # ── Recompute ───────────────────────────────────────────────────

    @property
    def recompute_running(self) -> bool:
        return self._recompute_task is not None and not self._recompute_task.done()

    async def recompute(self, force: bool = False) -> RecomputeResponse:
        """Run a full grouping pass. Rejects a second concurrent call."""
        if self.recompute_running:
            logger.warning("Recompute rejected: another recompute is in flight")
            raise RecomputeInProgress("A recompute is already in progress")

        self._abort_requested = False
        task = asyncio.create_task(self._run_recompute(force))
        self._recompute_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._abort_requested and task.cancelled():
                raise RecomputeAborted("Recompute aborted before commit") from None
            raise
        finally:
            self._abort_requested = False

    async def abort_recompute(self) -> bool:
        """Cancel the in-flight recompute unless it already reached its commit."""
        if not self.recompute_running or self._committing:
            return False
        self._abort_requested = True
        self._recompute_task.cancel()
        logger.info("Recompute abort requested")
        return True

    async def recompute_status(self) -> RecomputeStatus:
        async with self._commit_lock:
            last_run = await self.unit_repo.get_metadata(LAST_RECOMPUTE_KEY)
        return RecomputeStatus(
            running=self.recompute_running,
            committing=self._committing,
            lastRun=last_run if isinstance(last_run, dict) else None,
        )

    async def _snapshot(self) -> tuple[int, list[Session], list[WorkUnit], dict | None]:
        async with self._commit_lock:
            return (
                self._generation,
                await self._load_sessions(),
                await self.unit_repo.list_all(),
                await self.unit_repo.get_metadata(LAST_RECOMPUTE_KEY),
            )

    async def _run_recompute(self, force: bool) -> RecomputeResponse:
        started = time.monotonic()
        logger.info("Recompute started (force=%s)", force)
        try:
            with start_span("work_units.recompute", {"force": force}):
                response = await self._recompute_pass(force, started)
        except asyncio.CancelledError:
            logger.info("Recompute aborted; previous work units remain current")
            record_recompute("aborted", (time.monotonic() - started) * 1000)
            raise
        except Exception:
            logger.exception("Recompute failed; previous work units remain current")
            record_recompute("error", (time.monotonic() - started) * 1000)
            raise
        record_recompute(
            "skipped" if response.skipped else "ok",
            response.duration,
            created=response.workUnitsCreated,
            updated=response.workUnitsUpdated,
            deleted=response.workUnitsDeleted,
        )
        return response

    async def _recompute_pass(self, force: bool, started: float) -> RecomputeResponse:
        generation, sessions, previous, last_run = await self._snapshot()
        fingerprint = recompute_fingerprint(sessions, previous, self.cfg)
        if not force and isinstance(last_run, dict) and last_run.get("fingerprint") == fingerprint:
            logger.info("Recompute skipped: sessions and memberships unchanged")
            return RecomputeResponse(
                skipped=True,
                sessionsProcessed=len(sessions),
                duration=int((time.monotonic() - started) * 1000),
            )

        result = await asyncio.to_thread(compute_work_units, sessions, previous, self.cfg, now=now_iso())
        attempt = 0
        while True:
            async with self._commit_lock:
                if generation != self._generation and attempt >= self.commit_retries:
                    logger.info("Work units keep changing; recomputing under the write lock")
                    generation = self._generation
                    sessions = await self._load_sessions()
                    previous = await self.unit_repo.list_all()
                    result = await asyncio.to_thread(compute_work_units, sessions, previous, self.cfg, now=now_iso())
                if generation == self._generation:
                    duration = int((time.monotonic() - started) * 1000)
                    await self._commit_recompute(result, sessions, duration)
                    break
            attempt += 1
            logger.info(
                "Work units changed during recompute; redoing pass (attempt %d/%d)",
                attempt, self.commit_retries,
            )
            generation, sessions, previous, _ = await self._snapshot()
            result = await asyncio.to_thread(compute_work_units, sessions, previous, self.cfg, now=now_iso())

        logger.info(
            "Recompute finished: %d created, %d updated, %d deleted, %d sessions in %dms",
            len(result.created_ids), len(result.updated_ids), len(result.deleted_ids),
            result.sessions_processed, duration,
        )
        return RecomputeResponse(
            workUnitsCreated=len(result.created_ids),
            workUnitsUpdated=len(result.updated_ids),
            workUnitsDeleted=len(result.deleted_ids),
            sessionsProcessed=result.sessions_processed,
            duration=duration,
        )

    async def _commit_recompute(self, result: GroupingResult, sessions: list[Session], duration: int) -> None:
        """Swap in the new unit set. Runs to completion once started."""
        last_run = {
            "fingerprint": recompute_fingerprint(sessions, result.units, self.cfg),
            "finishedAt": now_iso(),
            "workUnitsCreated": len(result.created_ids),
            "workUnitsUpdated": len(result.updated_ids),
            "workUnitsDeleted": len(result.deleted_ids),
            "sessionsProcessed": result.sessions_processed,
            "duration": duration,
        }

        self._committing = True
        commit = asyncio.ensure_future(
            self.unit_repo.replace_all(result.units, metadata={LAST_RECOMPUTE_KEY: last_run})
        )
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            # The lock is held until the swap is done.
            await commit
            raise
        finally:
            self._committing = False

    # ── Manual overrides ────────────────────────────────────────────

    async def _load_sessions(self) -> list[Session]:
        return [row_to_session(row) for row in await self.session_repo.list_all()]

    async def _require_session(self, session_id: str) -> Session:
        row = await self.session_repo.get_by_id(session_id)
        if not row:
            raise InvalidSessionReference(f"Session {session_id} does not exist")
        return row_to_session(row)

    async def _sessions_for(self, session_ids: list[str]) -> dict[str, Session]:
        found: dict[str, Session] = {}
        for session_id in session_ids:
            row = await self.session_repo.get_by_id(session_id)
            if row:
                found[session_id] = row_to_session(row)
        return found

    async def _rebuild(self, unit: WorkUnit, members: list[WorkUnitSession], now: str) -> WorkUnit:
        sessions_by_id = await self._sessions_for([m.sessionId for m in members])
        return build_work_unit(
            unit.id, members, sessions_by_id, self.cfg,
            created_at=unit.createdAt or now, updated_at=now,
        )

    async def _new_unit_id(self, session_id: str) -> str:
        salt = 0
        candidate = unit_id_for_seed(session_id)
        while await self.unit_repo.get_by_id(candidate) is not None:
            salt += 1
            candidate = unit_id_for_seed(session_id, salt)
        return candidate

    async def add_session(self, unit_id: str | None, session_id: str) -> WorkUnit:
        """Pin a session into a unit, or into a new singleton when ``unit_id`` is None."""
        try:
            async with self._commit_lock:
                unit = await self._add_locked(unit_id, session_id)
                self._generation += 1
        except WorkUnitError:
            record_override("add", "rejected")
            raise
        record_override("add", "ok")
        logger.info("Session %s pinned to work unit %s", session_id, unit.id)
        return unit

    async def _add_locked(self, unit_id: str | None, session_id: str) -> WorkUnit:
        session = await self._require_session(session_id)
        target: WorkUnit | None = None
        if unit_id is not None:
            target = await self.unit_repo.get_by_id(unit_id)
            if target is None:
                raise WorkUnitNotFound(f"Work unit {unit_id} not found")
        current = await self.unit_repo.get_by_session_id(session_id)
        now = now_iso()

        saved: list[WorkUnit] = []
        deleted: list[str] = []
        if current is not None and (target is None or current.id != target.id):
            remaining = [m for m in current.sessions if m.sessionId != session_id]
            if remaining:
                saved.append(await self._rebuild(current, remaining, now))
            else:
                deleted.append(current.id)

        if target is None:
            # The seed anchors its own unit.
            membership = membership_for_session(session, 1.0, ["manual_override"])
            new_id = await self._new_unit_id(session_id)
            unit = build_work_unit(
                new_id, [membership], {session_id: session}, self.cfg,
                created_at=now, updated_at=now,
            )
        else:
            others = [m for m in target.sessions if m.sessionId != session_id]
            other_sessions = await self._sessions_for([m.sessionId for m in others])
            result = score_session_against_members(
                session, [other_sessions[m.sessionId] for m in others if m.sessionId in other_sessions], self.cfg,
            )
            membership = membership_for_session(session, result.score, ["manual_override"])
            unit = await self._rebuild(target, [*others, membership], now)

        saved.append(unit)
        await self.unit_repo.apply_changes(saved, deleted)
        if deleted:
            logger.info("Work unit %s emptied by move of %s; deleted", deleted[0], session_id)
        return unit

    async def create_unit(self, session_id: str) -> WorkUnit:
        return await self.add_session(None, session_id)

    async def remove_session(self, unit_id: str, session_id: str) -> WorkUnit:
        try:
            async with self._commit_lock:
                unit = await self.unit_repo.get_by_id(unit_id)
                if unit is None:
                    raise WorkUnitNotFound(f"Work unit {unit_id} not found")
                remaining = [m for m in unit.sessions if m.sessionId != session_id]
                if len(remaining) == len(unit.sessions):
                    raise SessionNotFound(f"Session {session_id} is not part of work unit {unit_id}")
                if not remaining:
                    raise LastMemberError(
                        f"Session {session_id} is the last member of {unit_id}; delete the work unit instead"
                    )
                updated = await self._rebuild(unit, remaining, now_iso())
                await self.unit_repo.save_unit(updated)
                self._generation += 1
        except WorkUnitError as exc:
            logger.warning("Remove of %s from %s rejected: %s", session_id, unit_id, exc)
            record_override("remove", "rejected")
            raise
        record_override("remove", "ok")
        logger.info("Session %s removed from work unit %s", session_id, unit_id)
        return updated

    async def delete_unit(self, unit_id: str) -> None:
        async with self._commit_lock:
            deleted = await self.unit_repo.delete_unit(unit_id)
            if deleted:
                self._generation += 1
        if not deleted:
            record_override("delete", "rejected")
            raise WorkUnitNotFound(f"Work unit {unit_id} not found")
        record_override("delete", "ok")
        logger.info("Work unit %s deleted", unit_id)

    # ── Reads ───────────────────────────────────────────────────────

    async def list_units(
        self,
        filters: dict | None = None,
        offset: int = 0,
        limit: int = 50,
        include_ungrouped: bool = True,
    ) -> WorkUnitListResponse:
        async with self._commit_lock:
            units = await self.unit_repo.list_units(filters, offset, limit)
            total = await self.unit_repo.count_units(filters)
            ungrouped = await self.unit_repo.count_ungrouped() if include_ungrouped else None
        return WorkUnitListResponse(
            workUnits=units, total=total, offset=offset, limit=limit, ungroupedCount=ungrouped,
        )

    async def get_unit(self, unit_id: str) -> WorkUnitDetailsResponse:
        async with self._commit_lock:
            unit = await self.unit_repo.get_by_id(unit_id)
        if unit is None:
            raise WorkUnitNotFound(f"Work unit {unit_id} not found")
        return WorkUnitDetailsResponse(workUnit=unit, sessions=unit.sessions)

    async def get_unit_sessions(self, unit_id: str, offset: int = 0, limit: int = 50) -> WorkUnitSessionPage:
        details = await self.get_unit(unit_id)
        members = details.sessions
        return WorkUnitSessionPage(
            sessions=members[offset:offset + limit], total=len(members), offset=offset, limit=limit,
        )

    async def get_unit_for_session(self, session_id: str) -> WorkUnit:
        async with self._commit_lock:
            session = await self.session_repo.get_by_id(session_id)
            unit = await self.unit_repo.get_by_session_id(session_id) if session else None
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if unit is None:
            raise WorkUnitNotFound(f"Session {session_id} is not part of any work unit")
        return unit

    async def stats(self) -> WorkUnitStats:
        async with self._commit_lock:
            units = await self.unit_repo.list_all()
            ungrouped = await self.unit_repo.count_ungrouped()
        return compute_work_unit_stats(units, ungrouped)
