"""Shared timestamp normalization helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond:
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return dt.isoformat().replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M:%S"):
            try:
                parsed = datetime.strptime(cleaned, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def normalize_iso_timestamp(value: Any) -> str:
    """Convert mixed timestamp inputs (ISO strings, datetimes, epoch ms) into UTC ISO strings."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if isinstance(value, (int, float)):
        # Transcript indexers hand out epoch milliseconds.
        if value <= 0:
            return ""
        try:
            parsed = datetime.fromtimestamp(float(value) / 1000.0, timezone.utc)
        except (OverflowError, OSError, ValueError):
            return ""
        return _format_datetime_utc(parsed)
    if isinstance(value, str):
        parsed = _parse_datetime_token(value)
        return _format_datetime_utc(parsed) if parsed else ""
    return ""


def iso_to_epoch(value: str | None) -> float:
    """Seconds since the epoch, or 0.0 when the value is missing or unparseable."""
    parsed = _parse_datetime_token(value or "")
    if not parsed:
        return 0.0
    return parsed.astimezone(timezone.utc).timestamp()


def epoch_to_iso(value: float) -> str:
    if value <= 0:
        return ""
    return _format_datetime_utc(datetime.fromtimestamp(value, timezone.utc))


def span_seconds(start: str | None, end: str | None) -> int | None:
    """Whole seconds between two timestamps; None when either side is unknown."""
    start_epoch = iso_to_epoch(start)
    end_epoch = iso_to_epoch(end)
    if not start_epoch or not end_epoch:
        return None
    return max(0, int(round(end_epoch - start_epoch)))
