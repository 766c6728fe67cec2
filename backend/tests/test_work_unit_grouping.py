import unittest

from backend.correlation_scoring import confidence_tier
from backend.models import Session
from backend.work_unit_grouping import (
    build_work_unit,
    compute_work_units,
    membership_for_session,
    unit_content,
    unit_id_for_seed,
)

NOW = "2026-01-06T00:00:00Z"
LATER = "2026-01-07T00:00:00Z"


def _session(session_id: str, start: str, end: str, **overrides) -> Session:
    payload = {
        "sessionId": session_id,
        "agent": "claude",
        "projectPath": "/work/app",
        "cwd": "/work/app",
        "startTime": start,
        "endTime": end,
        "frameCount": 10,
        "filesTouched": [],
    }
    payload.update(overrides)
    return Session(**payload)


def _pinned_unit(unit_id: str, *sessions: Session, score: float = 1.0):
    members = [membership_for_session(s, score, ["manual_override"]) for s in sessions]
    return build_work_unit(
        unit_id, members, {s.sessionId: s for s in sessions},
        created_at="2026-01-01T00:00:00Z", updated_at="2026-01-01T00:00:00Z",
    )


class GroupingScenarioTests(unittest.TestCase):
    def setUp(self) -> None:
        self.s1 = _session(
            "s1", "2026-01-05T10:00:00Z", "2026-01-05T10:30:00Z",
            agent="claude", filesTouched=["src/a.py", "src/b.py"], firstUserMessage="Fix the login redirect loop",
        )
        self.s2 = _session(
            "s2", "2026-01-05T10:40:00Z", "2026-01-05T11:00:00Z",
            agent="codex", filesTouched=["src/a.py", "src/b.py", "src/c.py"],
        )
        self.far = _session(
            "far", "2026-01-05T16:00:00Z", "2026-01-05T16:30:00Z",
            projectPath="/work/other", cwd="/work/other", filesTouched=["README.md"],
        )

    def test_related_sessions_form_one_unit(self) -> None:
        result = compute_work_units([self.s2, self.far, self.s1], [], now=NOW)

        self.assertEqual(len(result.units), 1)
        unit = result.units[0]
        self.assertEqual(unit.id, unit_id_for_seed("s1"))
        self.assertEqual([m.sessionId for m in unit.sessions], ["s1", "s2"])
        self.assertEqual(unit.agents, ["claude", "codex"])
        self.assertEqual(unit.confidence, "high")
        self.assertEqual(unit.name, "Fix the login redirect loop")
        self.assertEqual(unit.startTime, "2026-01-05T10:00:00Z")
        self.assertEqual(unit.endTime, "2026-01-05T11:00:00Z")
        self.assertEqual(unit.totalDuration, 1800 + 1200)
        self.assertEqual(unit.totalFrames, 20)
        self.assertEqual(unit.filesTouched, ["src/a.py", "src/b.py", "src/c.py"])
        self.assertEqual(
            unit.sessions[1].joinReason,
            ["project_path_match", "file_overlap", "time_proximity", "cwd_match"],
        )
        self.assertEqual(result.created_ids, [unit.id])
        self.assertEqual(result.sessions_processed, 3)

    def test_unrelated_sessions_five_hours_apart_stay_ungrouped(self) -> None:
        other = _session(
            "other", "2026-01-05T05:00:00Z", "2026-01-05T05:30:00Z",
            projectPath="/work/elsewhere", cwd="/tmp", filesTouched=["x.txt"],
        )
        result = compute_work_units([self.far, other], [], now=NOW)
        self.assertEqual(result.units, [])

    def test_second_pass_is_identical(self) -> None:
        sessions = [self.s1, self.s2, self.far]
        first = compute_work_units(sessions, [], now=NOW)
        second = compute_work_units(sessions, first.units, now=LATER)

        self.assertEqual([u.model_dump() for u in second.units], [u.model_dump() for u in first.units])
        self.assertEqual(second.created_ids, [])
        self.assertEqual(second.updated_ids, [])
        self.assertEqual(second.deleted_ids, [])

    def test_name_falls_back_to_project_basename(self) -> None:
        s1 = self.s1.model_copy(update={"firstUserMessage": None})
        result = compute_work_units([s1, self.s2], [], now=NOW)
        self.assertEqual(result.units[0].name, "app")


class PinnedMembershipTests(unittest.TestCase):
    def test_pinned_membership_survives_recompute(self) -> None:
        pinned = _session("px", "2026-01-05T10:00:00Z", "2026-01-05T10:30:00Z", projectPath="/work/a", cwd="/work/a")
        y = _session("y", "2026-01-05T10:05:00Z", "2026-01-05T10:20:00Z", projectPath="/work/b", cwd="/work/b")
        z = _session("z", "2026-01-05T10:10:00Z", "2026-01-05T10:40:00Z", projectPath="/work/b", cwd="/work/b")
        previous = [_pinned_unit("WU-pinned", pinned)]

        result = compute_work_units([pinned, y, z], previous, now=NOW)
        by_id = {u.id: u for u in result.units}

        self.assertEqual([m.sessionId for m in by_id["WU-pinned"].sessions], ["px"])
        self.assertEqual(by_id["WU-pinned"].sessions[0].joinReason, ["manual_override"])
        self.assertEqual(by_id["WU-pinned"].createdAt, "2026-01-01T00:00:00Z")
        auto = by_id[unit_id_for_seed("y")]
        self.assertEqual([m.sessionId for m in auto.sessions], ["y", "z"])

    def test_free_session_joins_pinned_unit(self) -> None:
        pinned = _session("p", "2026-01-05T09:00:00Z", "2026-01-05T09:30:00Z", filesTouched=["a.py"])
        free = _session("f", "2026-01-05T09:40:00Z", "2026-01-05T10:00:00Z", filesTouched=["a.py"])
        result = compute_work_units([pinned, free], [_pinned_unit("WU-keep", pinned)], now=NOW)

        self.assertEqual(len(result.units), 1)
        unit = result.units[0]
        self.assertEqual(unit.id, "WU-keep")
        self.assertEqual([m.sessionId for m in unit.sessions], ["p", "f"])
        self.assertNotIn("manual_override", unit.sessions[1].joinReason)
        self.assertEqual(unit.confidence, "high")
        self.assertEqual(result.updated_ids, ["WU-keep"])

    def test_zero_score_pin_caps_confidence(self) -> None:
        pinned = _session("p", "2026-01-05T09:00:00Z", "2026-01-05T09:30:00Z", filesTouched=["a.py"])
        free = _session("f", "2026-01-05T09:40:00Z", "2026-01-05T10:00:00Z", filesTouched=["a.py"])
        result = compute_work_units([pinned, free], [_pinned_unit("WU-keep", pinned, score=0.0)], now=NOW)

        self.assertEqual([m.sessionId for m in result.units[0].sessions], ["p", "f"])
        self.assertEqual(result.units[0].confidence, "low")

    def test_equal_scores_prefer_smallest_unit_id(self) -> None:
        p1 = _session("p1", "2026-01-05T09:00:00Z", "2026-01-05T09:30:00Z")
        p2 = _session("p2", "2026-01-05T09:00:00Z", "2026-01-05T09:30:00Z")
        free = _session("f", "2026-01-05T09:10:00Z", "2026-01-05T09:20:00Z")
        previous = [_pinned_unit("WU-b", p1), _pinned_unit("WU-a", p2)]

        result = compute_work_units([p1, p2, free], previous, now=NOW)
        by_id = {u.id: u for u in result.units}
        self.assertIn("f", [m.sessionId for m in by_id["WU-a"].sessions])
        self.assertNotIn("f", [m.sessionId for m in by_id["WU-b"].sessions])


class UnitLifecycleTests(unittest.TestCase):
    def test_automatic_unit_id_is_reused(self) -> None:
        a = _session("a", "2026-01-05T10:00:00Z", "2026-01-05T10:30:00Z")
        b = _session("b", "2026-01-05T10:35:00Z", "2026-01-05T10:50:00Z")
        first = compute_work_units([a, b], [], now=NOW)
        renamed = first.units[0].model_copy(update={"id": "WU-legacy"})

        result = compute_work_units([a, b], [renamed], now=LATER)
        self.assertEqual([u.id for u in result.units], ["WU-legacy"])
        self.assertEqual(result.created_ids, [])
        self.assertEqual(result.units[0].createdAt, renamed.createdAt)

    def test_units_without_sessions_are_deleted(self) -> None:
        a = _session("a", "2026-01-05T10:00:00Z", "2026-01-05T10:30:00Z")
        b = _session("b", "2026-01-05T10:35:00Z", "2026-01-05T10:50:00Z")
        first = compute_work_units([a, b], [], now=NOW)

        result = compute_work_units([], first.units, now=LATER)
        self.assertEqual(result.units, [])
        self.assertEqual(result.deleted_ids, [first.units[0].id])

    def test_content_change_bumps_updated_at_only(self) -> None:
        a = _session("a", "2026-01-05T10:00:00Z", "2026-01-05T10:30:00Z")
        b = _session("b", "2026-01-05T10:35:00Z", "2026-01-05T10:50:00Z")
        first = compute_work_units([a, b], [], now=NOW)
        longer = b.model_copy(update={"endTime": "2026-01-05T11:10:00Z", "frameCount": 40})

        result = compute_work_units([a, longer], first.units, now=LATER)
        unit = result.units[0]
        self.assertEqual(result.updated_ids, [unit.id])
        self.assertEqual(unit.createdAt, NOW)
        self.assertEqual(unit.updatedAt, LATER)
        self.assertNotEqual(unit_content(unit), unit_content(first.units[0]))


class InvariantTests(unittest.TestCase):
    def _sessions(self) -> list[Session]:
        sessions = []
        for i in range(12):
            hour = 8 + (i // 3)
            sessions.append(
                _session(
                    f"s{i:02d}",
                    f"2026-01-05T{hour:02d}:{(i % 3) * 15:02d}:00Z",
                    f"2026-01-05T{hour:02d}:{(i % 3) * 15 + 10:02d}:00Z",
                    projectPath=f"/work/p{i % 2}",
                    cwd=f"/work/p{i % 2}",
                    agent=("claude", "codex", "gemini")[i % 3],
                    filesTouched=[f"f{i % 4}.py", "shared.py"],
                )
            )
        return sessions

    def test_no_session_appears_in_two_units(self) -> None:
        result = compute_work_units(self._sessions(), [], now=NOW)
        seen = [m.sessionId for u in result.units for m in u.sessions]
        self.assertEqual(len(seen), len(set(seen)))

    def test_confidence_is_tier_of_weakest_member(self) -> None:
        result = compute_work_units(self._sessions(), [], now=NOW)
        self.assertTrue(result.units)
        for unit in result.units:
            self.assertEqual(unit.confidence, confidence_tier(min(m.correlationScore for m in unit.sessions)))

    def test_every_unit_has_members(self) -> None:
        result = compute_work_units(self._sessions(), [], now=NOW)
        self.assertTrue(all(len(u.sessions) >= 2 for u in result.units))


if __name__ == "__main__":
    unittest.main()
