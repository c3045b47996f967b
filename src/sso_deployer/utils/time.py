"""Time helpers for deployment timestamps."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seconds_between(started_at: str | None, completed_at: str | None) -> float | None:
    """Return elapsed seconds between two stored ISO timestamps, or None if either is unset."""
    if not started_at or not completed_at:
        return None
    return (parse_iso(completed_at) - parse_iso(started_at)).total_seconds()
