#!/usr/bin/env python3
"""Load session metadata into the session store.

Usage:
  python -m backend.scripts.import_sessions sessions.json
  python -m backend.scripts.import_sessions export.jsonl more.json --recompute
  python -m backend.scripts.import_sessions sessions.json --recompute --force
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from backend.db import connection, migrations
from backend.services.work_units import WorkUnitService

logger = logging.getLogger("recall.import")


def load_session_records(path: Path) -> list[dict[str, Any]]:
    """Read JSON (list, ``{"sessions": [...]}`` or one object) or JSON Lines."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".jsonl", ".ndjson"}:
        records = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                parsed = json.loads(line)
            except ValueError as exc:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({exc})") from exc
            if isinstance(parsed, dict):
                records.append(parsed)
        return records

    parsed = json.loads(text)
    if isinstance(parsed, dict) and isinstance(parsed.get("sessions"), list):
        parsed = parsed["sessions"]
    if isinstance(parsed, dict):
        return [parsed]
    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    return []


async def import_records(service: WorkUnitService, records: list[dict[str, Any]]) -> tuple[int, int]:
    imported = 0
    skipped = 0
    for record in records:
        try:
            await service.session_repo.upsert(record)
            imported += 1
        except ValueError as exc:
            skipped += 1
            logger.warning("Skipping session record: %s", exc)
    return imported, skipped


async def _run(paths: list[Path], recompute: bool, force: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        service = WorkUnitService(db)

        total_imported = 0
        for path in paths:
            try:
                records = load_session_records(path)
            except (OSError, ValueError) as exc:
                print(f"{path}: unreadable ({exc})")
                return 1
            imported, skipped = await import_records(service, records)
            total_imported += imported
            print(f"{path}: imported={imported} skipped={skipped}")

        if recompute:
            result = await service.recompute(force=force)
            print(
                f"recompute: skipped={result.skipped} created={result.workUnitsCreated} "
                f"updated={result.workUnitsUpdated} deleted={result.workUnitsDeleted} "
                f"sessions={result.sessionsProcessed} duration_ms={result.duration}"
            )
        print(f"total imported: {total_imported}")
        return 0
    finally:
        await connection.close_connection()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import session metadata into the Recall store")
    parser.add_argument("files", nargs="+", type=Path, help="JSON or JSON Lines files")
    parser.add_argument("--recompute", action="store_true", help="Recompute work units after importing")
    parser.add_argument("--force", action="store_true", help="Recompute even when nothing changed")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_run(args.files, args.recompute, args.force))


if __name__ == "__main__":
    raise SystemExit(main())
