"""Correlation signal extraction between sessions and work-unit profiles."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable

from backend.date_utils import iso_to_epoch
from backend.models import Session


def normalize_path(path: str | None) -> str:
    """Normalize a project path or cwd for equality checks.

    Claude, Codex and Gemini report paths differently (home-relative, trailing
    slashes, Windows separators), so compare on a folded form.
    """
    value = (path or "").strip().replace("\\", "/")
    if not value:
        return ""
    home = os.path.expanduser("~").replace("\\", "/").rstrip("/")
    if home and (value == home or value.startswith(home + "/")):
        value = "~" + value[len(home):]
    if len(value) > 1:
        value = value.rstrip("/") or "/"
    return value.lower()


def normalize_file_set(paths: Iterable[str] | None) -> frozenset[str]:
    return frozenset(
        token for token in (normalize_path(p) for p in (paths or [])) if token
    )


def jaccard_similarity(set_a: frozenset[str], set_b: frozenset[str]) -> float:
    """|A∩B| / |A∪B|, defined as 0 when both sets are empty."""
    union = len(set_a | set_b)
    if union == 0:
        return 0.0
    return len(set_a & set_b) / union


def time_proximity(
    start_a: float, end_a: float, start_b: float, end_b: float, horizon_seconds: float,
) -> float:
    """1.0 for overlapping spans, decaying linearly to 0 at the horizon."""
    if not start_a or not start_b:
        return 0.0
    gap = max(start_a, start_b) - min(end_a, end_b)
    if gap <= 0:
        return 1.0
    if horizon_seconds <= 0:
        return 0.0
    return max(0.0, 1.0 - gap / horizon_seconds)


@dataclass(frozen=True)
class CorrelationProfile:
    """Comparable features of one session, or the aggregate of a unit's members."""
    project_path: str
    cwd: str
    files: frozenset[str]
    start: float
    end: float


@dataclass(frozen=True)
class SignalVector:
    path_match: bool
    cwd_match: bool
    file_overlap: float
    time_proximity: float


def _session_span(session: Session) -> tuple[float, float]:
    start = iso_to_epoch(session.startTime)
    end = iso_to_epoch(session.endTime) or start
    return start, max(start, end)


def profile_for_session(session: Session) -> CorrelationProfile:
    start, end = _session_span(session)
    return CorrelationProfile(
        project_path=normalize_path(session.projectPath),
        cwd=normalize_path(session.cwd),
        files=normalize_file_set(session.filesTouched),
        start=start,
        end=end,
    )


def profile_for_members(members: list[Session]) -> CorrelationProfile:
    """Representative profile of a unit: union of files, most recent path/cwd, full span."""
    if not members:
        raise ValueError("cannot build a profile for an empty unit")
    files: set[str] = set()
    spans = []
    for member in members:
        files.update(normalize_file_set(member.filesTouched))
        spans.append((_session_span(member), member))

    # Most recent member: latest end, then latest start, then highest id.
    (_, latest) = max(spans, key=lambda item: (item[0][1], item[0][0], item[1].sessionId))
    starts = [span[0] for span, _ in spans if span[0]]
    return CorrelationProfile(
        project_path=normalize_path(latest.projectPath),
        cwd=normalize_path(latest.cwd),
        files=frozenset(files),
        start=min(starts) if starts else 0.0,
        end=max(span[1] for span, _ in spans),
    )


def extract_signals(
    a: CorrelationProfile, b: CorrelationProfile, horizon_seconds: float,
) -> SignalVector:
    """Pure, symmetric feature extraction between two profiles."""
    return SignalVector(
        path_match=bool(a.project_path) and a.project_path == b.project_path,
        cwd_match=bool(a.cwd) and a.cwd == b.cwd,
        file_overlap=jaccard_similarity(a.files, b.files),
        time_proximity=time_proximity(a.start, a.end, b.start, b.end, horizon_seconds),
    )
