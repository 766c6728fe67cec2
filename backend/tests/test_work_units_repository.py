import unittest

import aiosqlite

from backend.db.repositories.sessions import SqliteSessionRepository
from backend.db.repositories.work_units import SqliteWorkUnitRepository
from backend.db.sqlite_migrations import run_migrations
from backend.models import WorkUnit, WorkUnitSession


def _member(session_id: str, start: str, agent: str = "claude", *, pinned: bool = False, score: float = 0.8) -> WorkUnitSession:
    return WorkUnitSession(
        sessionId=session_id,
        agent=agent,
        correlationScore=score,
        joinReason=["manual_override"] if pinned else ["project_path_match", "time_proximity"],
        startTime=start,
        endTime=None,
        frameCount=3,
    )


def _unit(unit_id: str, members: list[WorkUnitSession], **overrides) -> WorkUnit:
    payload = {
        "id": unit_id,
        "name": unit_id.lower(),
        "projectPath": "/work/app",
        "sessions": members,
        "agents": sorted({m.agent for m in members}),
        "confidence": "high",
        "startTime": members[0].startTime,
        "endTime": members[-1].startTime,
        "totalFrames": 3 * len(members),
        "filesTouched": ["src/a.py"],
        "createdAt": "2026-01-05T00:00:00Z",
        "updatedAt": "2026-01-05T00:00:00Z",
    }
    payload.update(overrides)
    return WorkUnit(**payload)


class WorkUnitRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteWorkUnitRepository(self.db)
        self.sessions = SqliteSessionRepository(self.db)

        self.alpha = _unit(
            "WU-alpha",
            [_member("s1", "2026-01-05T10:00:00Z"), _member("s2", "2026-01-05T10:30:00Z", "codex")],
        )
        self.beta = _unit(
            "WU-beta",
            [_member("s3", "2026-01-05T12:00:00.500Z", "gemini", pinned=True, score=0.0)],
            projectPath="/work/Other",
            confidence="low",
        )
        await self.repo.replace_all([self.alpha, self.beta])

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_round_trip_keeps_member_order_and_fields(self) -> None:
        loaded = await self.repo.get_by_id("WU-alpha")
        self.assertEqual(loaded, self.alpha)

        pinned = await self.repo.get_by_id("WU-beta")
        self.assertTrue(pinned.sessions[0].pinned)
        self.assertEqual(pinned.sessions[0].joinReason, ["manual_override"])

    async def test_list_orders_newest_first_and_filters(self) -> None:
        units = await self.repo.list_units()
        self.assertEqual([u.id for u in units], ["WU-beta", "WU-alpha"])

        self.assertEqual([u.id for u in await self.repo.list_units({"confidence": "high"})], ["WU-alpha"])
        self.assertEqual([u.id for u in await self.repo.list_units({"agent": "codex"})], ["WU-alpha"])
        self.assertEqual([u.id for u in await self.repo.list_units({"project": "other"})], ["WU-beta"])
        self.assertEqual(await self.repo.count_units({"agent": "claude"}), 1)
        self.assertEqual(await self.repo.count_units(), 2)
        self.assertEqual([u.id for u in await self.repo.list_units(None, offset=1, limit=1)], ["WU-alpha"])

    async def test_get_by_session_id(self) -> None:
        unit = await self.repo.get_by_session_id("s2")
        self.assertEqual(unit.id, "WU-alpha")
        self.assertIsNone(await self.repo.get_by_session_id("missing"))

    async def test_count_ungrouped_uses_session_store(self) -> None:
        for session_id in ("s1", "s9", "s10"):
            await self.sessions.upsert({"sessionId": session_id, "startTime": "2026-01-05T10:00:00Z"})
        self.assertEqual(await self.repo.count_ungrouped(), 2)

    async def test_delete_unit_removes_memberships(self) -> None:
        self.assertTrue(await self.repo.delete_unit("WU-alpha"))
        self.assertFalse(await self.repo.delete_unit("WU-alpha"))
        self.assertIsNone(await self.repo.get_by_session_id("s1"))

    async def test_apply_changes_moves_session_between_units(self) -> None:
        moved_alpha = _unit("WU-alpha", [self.alpha.sessions[0]])
        moved_beta = _unit("WU-beta", [self.beta.sessions[0], _member("s2", "2026-01-05T10:30:00Z", "codex", pinned=True)])
        await self.repo.apply_changes([moved_beta, moved_alpha])

        self.assertEqual((await self.repo.get_by_session_id("s2")).id, "WU-beta")
        self.assertEqual(len((await self.repo.get_by_id("WU-alpha")).sessions), 1)

    async def test_duplicate_membership_rolls_back(self) -> None:
        intruder = _unit("WU-gamma", [_member("s1", "2026-01-05T09:00:00Z")])
        with self.assertRaises(aiosqlite.IntegrityError):
            await self.repo.save_unit(intruder)

        self.assertIsNone(await self.repo.get_by_id("WU-gamma"))
        self.assertEqual((await self.repo.get_by_session_id("s1")).id, "WU-alpha")

    async def test_replace_all_swaps_whole_set(self) -> None:
        gamma = _unit("WU-gamma", [_member("s1", "2026-01-05T09:00:00Z")])
        await self.repo.replace_all([gamma])
        self.assertEqual([u.id for u in await self.repo.list_all()], ["WU-gamma"])

    async def test_replace_all_writes_metadata_in_same_transaction(self) -> None:
        gamma = _unit("WU-gamma", [_member("s1", "2026-01-05T09:00:00Z")])
        await self.repo.replace_all([gamma], metadata={"last_recompute": {"fingerprint": "abc"}})
        self.assertEqual(await self.repo.get_metadata("last_recompute"), {"fingerprint": "abc"})

        # An unserializable bookkeeping value fails the whole swap.
        with self.assertRaises(TypeError):
            await self.repo.replace_all([self.alpha], metadata={"last_recompute": {"fingerprint": object()}})

        self.assertEqual([u.id for u in await self.repo.list_all()], ["WU-gamma"])
        self.assertEqual(await self.repo.get_metadata("last_recompute"), {"fingerprint": "abc"})

    async def test_metadata_round_trip(self) -> None:
        self.assertIsNone(await self.repo.get_metadata("last_recompute"))
        await self.repo.set_metadata("last_recompute", {"fingerprint": "abc", "sessionsProcessed": 3})
        await self.repo.set_metadata("last_recompute", {"fingerprint": "def", "sessionsProcessed": 4})
        self.assertEqual(await self.repo.get_metadata("last_recompute"), {"fingerprint": "def", "sessionsProcessed": 4})


if __name__ == "__main__":
    unittest.main()
