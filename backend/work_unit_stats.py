"""Read-side summary counts over the current work units."""
from __future__ import annotations

from typing import Iterable

from backend.models import CONFIDENCE_LEVELS, WorkUnit, WorkUnitStats


def compute_work_unit_stats(units: Iterable[WorkUnit], ungrouped_sessions: int) -> WorkUnitStats:
    by_confidence = {level: 0 for level in CONFIDENCE_LEVELS}
    by_agent: dict[str, int] = {}
    total = 0
    for unit in units:
        total += 1
        by_confidence[unit.confidence] = by_confidence.get(unit.confidence, 0) + 1
        # A unit counts once per distinct agent involved.
        for agent in set(unit.agents):
            by_agent[agent] = by_agent.get(agent, 0) + 1
    return WorkUnitStats(
        total=total,
        byConfidence=by_confidence,
        byAgent=dict(sorted(by_agent.items())),
        ungroupedSessions=max(0, int(ungrouped_sessions)),
    )
