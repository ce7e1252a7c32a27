"""Shared utility helpers for vibe-lottery."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse SQLite TIMESTAMP string to timezone-aware datetime, or None."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts)
        # SQLite stores naive timestamps as UTC
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


def to_db_timestamp(dt: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC ISO string.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    """
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_utc() -> datetime:
    """Return current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_week_str(dt: datetime | None = None) -> str:
    """Return ISO week string like '2026-W09'."""
    if dt is None:
        dt = now_utc()
    return dt.astimezone(timezone.utc).strftime("%G-W%V")


def day_start_utc(dt: datetime, utc_offset_hours: int) -> datetime:
    """Return the UTC instant of local midnight for ``dt`` in a fixed-offset zone."""
    tz = timezone(timedelta(hours=utc_offset_hours))
    local = dt.astimezone(tz)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)
