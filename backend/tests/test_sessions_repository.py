import json
import unittest

import aiosqlite

from backend.db.repositories.sessions import SqliteSessionRepository, row_to_session
from backend.db.sqlite_migrations import run_migrations


class SessionRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteSessionRepository(self.db)

        await self.repo.upsert({
            "sessionId": "S-1",
            "agent": "Claude",
            "model": "claude-sonnet",
            "projectPath": "/work/App",
            "cwd": "/work/App",
            "startTime": "2026-01-05T10:00:00Z",
            "endTime": "2026-01-05T10:30:00Z",
            "frameCount": 12,
            "filesTouched": ["src/a.py", "src/a.py", " ", "src/b.py"],
            "firstUserMessage": "Add retry to uploader",
        })
        await self.repo.upsert({
            "sessionId": "S-2",
            "agent": "aider",
            "projectPath": "/work/other",
            "startTime": "2026-01-05T09:00:00+01:00",
        })

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_upsert_normalizes_values(self) -> None:
        row = await self.repo.get_by_id("S-1")
        self.assertEqual(row["agent"], "claude")
        self.assertEqual(json.loads(row["files_touched_json"]), ["src/a.py", "src/b.py"])

        other = row_to_session(await self.repo.get_by_id("S-2"))
        self.assertEqual(other.agent, "unknown")
        self.assertEqual(other.startTime, "2026-01-05T08:00:00Z")
        self.assertIsNone(other.endTime)

    async def test_upsert_replaces_existing_row(self) -> None:
        await self.repo.upsert({"sessionId": "S-2", "agent": "gemini", "startTime": "2026-01-05T11:00:00Z"})
        session = row_to_session(await self.repo.get_by_id("S-2"))
        self.assertEqual(session.agent, "gemini")
        self.assertEqual(await self.repo.count(), 2)

    async def test_upsert_requires_id_and_start(self) -> None:
        with self.assertRaises(ValueError):
            await self.repo.upsert({"startTime": "2026-01-05T10:00:00Z"})
        with self.assertRaises(ValueError):
            await self.repo.upsert({"sessionId": "S-3", "startTime": "not a date"})

    async def test_list_all_orders_by_start(self) -> None:
        rows = await self.repo.list_all()
        self.assertEqual([r["id"] for r in rows], ["S-2", "S-1"])

    async def test_paginated_filters(self) -> None:
        rows = await self.repo.list_paginated(0, 10, {"agent": "CLAUDE"})
        self.assertEqual([r["id"] for r in rows], ["S-1"])

        rows = await self.repo.list_paginated(0, 10, {"project": "app"})
        self.assertEqual([r["id"] for r in rows], ["S-1"])
        self.assertEqual(await self.repo.count({"project": "WORK"}), 2)

        rows = await self.repo.list_paginated(1, 1)
        self.assertEqual([r["id"] for r in rows], ["S-2"])

    async def test_delete(self) -> None:
        self.assertTrue(await self.repo.delete("S-1"))
        self.assertFalse(await self.repo.delete("S-1"))
        self.assertIsNone(await self.repo.get_by_id("S-1"))


if __name__ == "__main__":
    unittest.main()
