"""Work-unit grouping engine.

Assigns sessions to work units with a deterministic greedy pass:

1. Memberships pinned by a manual override are kept exactly as they are and
   seed their units.
2. Every other session is processed in (startTime, sessionId) order and joins
   the highest-scoring eligible target, either a unit built so far or a
   still-unassigned session. Ties go to units before sessions, then to the
   smallest unit id.
3. Derived fields are recomputed once assignment settles. Units that end up
   with a single automatic member are not kept; that session stays ungrouped.

Running the pass again on its own output with unchanged sessions yields the
same ids, memberships and scores.
"""
from __future__ import annotations

import hashlib
from collections import Counter
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from backend.correlation_scoring import (
    DEFAULT_CORRELATION_CONFIG,
    CorrelationConfig,
    CorrelationResult,
    confidence_tier,
    is_eligible,
    score_signals,
)
from backend.correlation_signals import (
    CorrelationProfile,
    extract_signals,
    normalize_path,
    profile_for_members,
    profile_for_session,
)
from backend.date_utils import epoch_to_iso, iso_to_epoch, normalize_iso_timestamp, span_seconds
from backend.models import AGENT_TYPES, Session, WorkUnit, WorkUnitSession, normalize_reasons

_NAME_MAX_CHARS = 50
_PREVIEW_MAX_CHARS = 200


def _session_sort_key(session: Session) -> tuple[float, str]:
    return iso_to_epoch(session.startTime), session.sessionId


def _member_sort_key(member: WorkUnitSession) -> tuple[float, str]:
    return iso_to_epoch(member.startTime), member.sessionId


def unit_id_for_seed(session_id: str, salt: int = 0) -> str:
    token = session_id if salt == 0 else f"{session_id}:{salt}"
    return "WU-" + hashlib.sha1(token.encode("utf-8")).hexdigest()[:12]


def membership_for_session(
    session: Session, score: float, reasons: list[str] | tuple[str, ...],
) -> WorkUnitSession:
    """Snapshot a session into a membership record."""
    preview = (session.firstUserMessage or "").strip()
    return WorkUnitSession(
        sessionId=session.sessionId,
        agent=session.agent,
        model=session.model or None,
        correlationScore=round(min(1.0, max(0.0, score)), 6),
        joinReason=normalize_reasons(reasons),
        startTime=normalize_iso_timestamp(session.startTime) or session.startTime,
        endTime=normalize_iso_timestamp(session.endTime) or None,
        duration=span_seconds(session.startTime, session.endTime),
        frameCount=session.frameCount,
        firstUserMessage=preview[:_PREVIEW_MAX_CHARS] or None,
    )


def score_session_against_members(
    session: Session, members: list[Session], cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG,
) -> CorrelationResult:
    if not members:
        return CorrelationResult(score=0.0, reasons=())
    signals = extract_signals(profile_for_session(session), profile_for_members(members), cfg.horizon_seconds)
    return score_signals(signals, cfg)


def _unit_name(first: WorkUnitSession, project_path: str) -> str:
    preview = (first.firstUserMessage or "").strip()
    if preview:
        return preview[:_NAME_MAX_CHARS]
    parts = [p for p in PurePosixPath(project_path.replace("\\", "/")).parts if p not in {"/", ""}]
    if parts:
        return parts[-1]
    return "Unknown Project"


def _representative_path(members: list[WorkUnitSession], sessions_by_id: dict[str, Session]) -> str:
    raw_paths: list[tuple[str, str]] = []
    for member in members:
        session = sessions_by_id.get(member.sessionId)
        if session and normalize_path(session.projectPath):
            raw_paths.append((normalize_path(session.projectPath), session.projectPath))
    if not raw_paths:
        return ""
    counts = Counter(norm for norm, _ in raw_paths)
    best = max(counts.values())
    # Members are in start order, so the first hit is the earliest one.
    for norm, raw in raw_paths:
        if counts[norm] == best:
            return raw
    return ""


def build_work_unit(
    unit_id: str,
    members: list[WorkUnitSession],
    sessions_by_id: dict[str, Session],
    cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG,
    *,
    created_at: str = "",
    updated_at: str = "",
) -> WorkUnit:
    """Recompute every derived field of a unit from its memberships."""
    if not members:
        raise ValueError(f"work unit {unit_id} has no sessions")
    ordered = sorted(members, key=_member_sort_key)

    seen_agents = {m.agent for m in ordered}
    agents = [agent for agent in AGENT_TYPES if agent in seen_agents]

    start_epochs = [iso_to_epoch(m.startTime) for m in ordered]
    end_epochs = [iso_to_epoch(m.endTime) or iso_to_epoch(m.startTime) for m in ordered]
    known_starts = [e for e in start_epochs if e]
    start_time = epoch_to_iso(min(known_starts)) if known_starts else ordered[0].startTime
    end_time = epoch_to_iso(max(end_epochs)) if any(end_epochs) else start_time

    files: set[str] = set()
    for member in ordered:
        session = sessions_by_id.get(member.sessionId)
        if session:
            files.update(p for p in session.filesTouched if p)

    project_path = _representative_path(ordered, sessions_by_id)
    weakest = min(m.correlationScore for m in ordered)

    return WorkUnit(
        id=unit_id,
        name=_unit_name(ordered[0], project_path),
        projectPath=project_path,
        sessions=ordered,
        agents=agents,
        confidence=confidence_tier(weakest, cfg),
        startTime=start_time,
        endTime=end_time,
        totalDuration=sum(m.duration or 0 for m in ordered),
        totalFrames=sum(m.frameCount for m in ordered),
        filesTouched=sorted(files),
        createdAt=created_at,
        updatedAt=updated_at,
    )


def unit_content(unit: WorkUnit) -> dict:
    """Persisted content of a unit, ignoring mutation timestamps."""
    return unit.model_dump(exclude={"createdAt", "updatedAt"})


@dataclass
class _Cluster:
    id: str
    pinned: list[WorkUnitSession] = field(default_factory=list)
    members: list[tuple[Session, CorrelationResult | None]] = field(default_factory=list)
    _profile: CorrelationProfile | None = None

    def profile_sessions(self, sessions_by_id: dict[str, Session]) -> list[Session]:
        sessions = [sessions_by_id[m.sessionId] for m in self.pinned if m.sessionId in sessions_by_id]
        sessions.extend(session for session, _ in self.members)
        return sessions

    def profile(self, sessions_by_id: dict[str, Session]) -> CorrelationProfile | None:
        if self._profile is None:
            sessions = self.profile_sessions(sessions_by_id)
            self._profile = profile_for_members(sessions) if sessions else None
        return self._profile

    def add(self, session: Session, result: CorrelationResult) -> None:
        # A lone seed takes the score of the first session that joins it.
        if len(self.members) == 1 and not self.pinned and self.members[0][1] is None:
            self.members[0] = (self.members[0][0], result)
        self.members.append((session, result))
        self._profile = None

    def size(self) -> int:
        return len(self.pinned) + len(self.members)


@dataclass
class GroupingResult:
    units: list[WorkUnit]
    created_ids: list[str]
    updated_ids: list[str]
    deleted_ids: list[str]
    sessions_processed: int


class _IdAllocator:
    def __init__(self, previous_owner: dict[str, str], claimed: set[str]):
        self.previous_owner = previous_owner
        self.claimed = claimed

    def for_seed(self, session_id: str) -> str:
        reused = self.previous_owner.get(session_id)
        if reused and reused not in self.claimed:
            self.claimed.add(reused)
            return reused
        salt = 0
        candidate = unit_id_for_seed(session_id)
        while candidate in self.claimed:
            salt += 1
            candidate = unit_id_for_seed(session_id, salt)
        self.claimed.add(candidate)
        return candidate


def compute_work_units(
    sessions: list[Session],
    previous_units: list[WorkUnit],
    cfg: CorrelationConfig = DEFAULT_CORRELATION_CONFIG,
    *,
    now: str,
) -> GroupingResult:
    """Run a full grouping pass over all sessions."""
    sessions_by_id = {s.sessionId: s for s in sessions}
    previous_by_id = {u.id: u for u in previous_units}

    # Step 1: pinned memberships seed their units; everything else is free.
    clusters: list[_Cluster] = []
    pinned_ids: set[str] = set()
    previous_owner: dict[str, str] = {}
    for unit in sorted(previous_units, key=lambda u: u.id):
        pinned = []
        for member in unit.sessions:
            if member.pinned and member.sessionId not in pinned_ids:
                pinned.append(member)
                pinned_ids.add(member.sessionId)
            elif not member.pinned:
                previous_owner.setdefault(member.sessionId, unit.id)
        if pinned:
            clusters.append(_Cluster(id=unit.id, pinned=pinned))

    ids = _IdAllocator(previous_owner, {c.id for c in clusters})
    free = sorted((s for s in sessions if s.sessionId not in pinned_ids), key=_session_sort_key)
    free_profiles = {s.sessionId: profile_for_session(s) for s in free}
    assigned: set[str] = set()

    # Step 2: greedy assignment in start order.
    for session in free:
        if session.sessionId in assigned:
            continue
        own_profile = free_profiles[session.sessionId]
        best_key = None
        best_target: _Cluster | Session | None = None
        best_result: CorrelationResult | None = None

        for cluster in clusters:
            profile = cluster.profile(sessions_by_id)
            if profile is None:
                continue
            result = score_signals(extract_signals(own_profile, profile, cfg.horizon_seconds), cfg)
            if not is_eligible(result, cfg):
                continue
            key = (-result.score, 0, cluster.id, 0.0, "")
            if best_key is None or key < best_key:
                best_key, best_target, best_result = key, cluster, result

        for other in free:
            if other.sessionId == session.sessionId or other.sessionId in assigned:
                continue
            result = score_signals(
                extract_signals(own_profile, free_profiles[other.sessionId], cfg.horizon_seconds), cfg,
            )
            if not is_eligible(result, cfg):
                continue
            start, other_id = _session_sort_key(other)
            key = (-result.score, 1, "", start, other_id)
            if best_key is None or key < best_key:
                best_key, best_target, best_result = key, other, result

        assigned.add(session.sessionId)
        if isinstance(best_target, _Cluster):
            best_target.add(session, best_result)
        elif isinstance(best_target, Session):
            cluster = _Cluster(id=ids.for_seed(session.sessionId))
            cluster.members.append((session, best_result))
            cluster.add(best_target, best_result)
            assigned.add(best_target.sessionId)
            clusters.append(cluster)
        else:
            clusters.append(_Cluster(id=ids.for_seed(session.sessionId), members=[(session, None)]))

    # Step 3: derive aggregates, drop automatic singletons and empty units.
    units: list[WorkUnit] = []
    for cluster in clusters:
        if cluster.size() == 0:
            continue
        if not cluster.pinned and cluster.size() < 2:
            continue
        members = list(cluster.pinned)
        members.extend(
            membership_for_session(session, result.score, result.reasons)
            for session, result in cluster.members
            if result is not None
        )
        units.append(build_work_unit(cluster.id, members, sessions_by_id, cfg))

    created: list[str] = []
    updated: list[str] = []
    finalized: list[WorkUnit] = []
    for unit in units:
        previous = previous_by_id.get(unit.id)
        if previous is None:
            created.append(unit.id)
            finalized.append(unit.model_copy(update={"createdAt": now, "updatedAt": now}))
        elif unit_content(unit) == unit_content(previous):
            finalized.append(
                unit.model_copy(update={"createdAt": previous.createdAt, "updatedAt": previous.updatedAt})
            )
        else:
            updated.append(unit.id)
            finalized.append(unit.model_copy(update={"createdAt": previous.createdAt or now, "updatedAt": now}))

    new_ids = {u.id for u in finalized}
    deleted = sorted(uid for uid in previous_by_id if uid not in new_ids)
    finalized.sort(key=lambda u: u.id)
    return GroupingResult(
        units=finalized,
        created_ids=sorted(created),
        updated_ids=sorted(updated),
        deleted_ids=deleted,
        sessions_processed=len(sessions),
    )
