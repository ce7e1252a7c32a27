"""Browsing-history evidence parsing for booster activation.

Two named strategies turn an uploaded export into ``HistoryEntry`` pairs:

* ``RecordArrayParser``: JSON arrays of visit records (Chrome/Takeout style).
* ``TabularParser``: CSV with a header row naming a URL column and,
  optionally, a date column.

Only two numbers survive parsing: unique URLs and unique URLs visited inside
the recent window. The text itself is never stored.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, NamedTuple


class EvidenceError(ValueError):
    """Raised when an export cannot be parsed by any strategy."""


class HistoryEntry(NamedTuple):
    url: str
    visited_at: datetime | None


class EvidenceCounts(NamedTuple):
    unique_entries: int
    recent_entries: int


URL_KEYS = ("url", "URL", "uri")
TIME_KEYS = (
    "visitTime", "lastVisitTime", "time", "visit_time", "time_usec", "timestamp", "date",
)
URL_COLUMNS = ("url", "uri", "address", "link")
DATE_COLUMNS = ("date", "time", "timestamp", "visit_time", "visittime", "last_visit")


# ═══════════════════════════════════════════════════════════════
#  Timestamp normalization
# ═══════════════════════════════════════════════════════════════

def parse_visit_time(value: Any) -> datetime | None:
    """Normalize an epoch number (s / ms / µs) or ISO text to aware UTC."""
    if value is None or value == "" or isinstance(value, bool):
        return None

    number: float | None = None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        try:
            number = float(text)
        except ValueError:
            number = None

    try:
        if number is not None:
            # 17-digit Takeout values are microseconds; 13-digit are milliseconds.
            if number > 1e15:
                return datetime.fromtimestamp(number / 1_000_000, tz=timezone.utc)
            if number >= 1e11:
                return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
            if number > 1e9:
                return datetime.fromtimestamp(number, tz=timezone.utc)
            return None

        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ═══════════════════════════════════════════════════════════════
#  Strategies
# ═══════════════════════════════════════════════════════════════

class RecordArrayParser:
    """JSON export: a list of records, or an object holding one."""

    name = "json"

    def parse(self, text: str) -> list[HistoryEntry]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise EvidenceError(f"Invalid JSON: {e.msg}") from e
        except RecursionError as e:
            raise EvidenceError("JSON nested too deeply") from e

        records = self._find_records(data)
        entries: list[HistoryEntry] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            url = self._first(record, URL_KEYS)
            if not url:
                continue
            entries.append(HistoryEntry(str(url), parse_visit_time(self._first(record, TIME_KEYS))))
        return entries

    @staticmethod
    def _find_records(data: Any) -> list:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            history = data.get("Browser History")
            if isinstance(history, list):
                return history
            for value in data.values():
                if isinstance(value, list):
                    return value
            return []
        raise EvidenceError("JSON export must be an array or an object")

    @staticmethod
    def _first(record: dict, keys: Iterable[str]) -> Any:
        for key in keys:
            value = record.get(key)
            if value not in (None, ""):
                return value
        return None


class TabularParser:
    """CSV export with a header row."""

    name = "csv"
    has_dates = True

    def parse(self, text: str) -> list[HistoryEntry]:
        try:
            rows = [r for r in csv.reader(io.StringIO(text)) if any(c.strip() for c in r)]
        except csv.Error as e:
            raise EvidenceError(f"Malformed CSV: {e}") from e
        if len(rows) < 2:
            raise EvidenceError("CSV file is empty or has no data rows.")

        header = [c.strip().strip('"').lower() for c in rows[0]]
        url_col = self._find_column(header, URL_COLUMNS)
        if url_col is None:
            raise EvidenceError("CSV must have a URL column.")
        date_col = self._find_column(header, DATE_COLUMNS)
        self.has_dates = date_col is not None

        entries: list[HistoryEntry] = []
        for row in rows[1:]:
            url = row[url_col].strip() if url_col < len(row) else ""
            if not url:
                continue
            if date_col is None:
                # No date column: every row counts as recent.
                entries.append(HistoryEntry(url, None))
                continue
            raw = row[date_col].strip() if date_col < len(row) else ""
            entries.append(HistoryEntry(url, parse_visit_time(raw)))
        return entries

    @staticmethod
    def _find_column(header: list[str], candidates: Iterable[str]) -> int | None:
        for candidate in candidates:
            for idx, col in enumerate(header):
                if candidate in col:
                    return idx
        return None


# ═══════════════════════════════════════════════════════════════
#  Detection & counting
# ═══════════════════════════════════════════════════════════════

def parse_evidence(text: str, format_hint: str | None = None) -> tuple[list[HistoryEntry], bool]:
    """Parse an export, choosing the strategy from the hint or by trying JSON first.

    Returns ``(entries, has_dates)``; ``has_dates`` is False only for a CSV
    without a date column.
    """
    hint = (format_hint or "").lower()
    if hint.endswith(".json") or hint == "json":
        return RecordArrayParser().parse(text), True
    if hint.endswith(".csv") or hint == "csv":
        return _parse_tabular(text)
    try:
        return RecordArrayParser().parse(text), True
    except EvidenceError:
        return _parse_tabular(text)


def _parse_tabular(text: str) -> tuple[list[HistoryEntry], bool]:
    parser = TabularParser()
    entries = parser.parse(text)
    return entries, parser.has_dates


def count_evidence(
    entries: list[HistoryEntry],
    now: datetime,
    window_days: int,
    has_dates: bool = True,
) -> EvidenceCounts:
    """Count unique URLs, and unique URLs with a visit inside the window."""
    cutoff = now - timedelta(days=window_days)
    unique: set[str] = set()
    recent: set[str] = set()
    for entry in entries:
        unique.add(entry.url)
        if not has_dates or (entry.visited_at is not None and entry.visited_at >= cutoff):
            recent.add(entry.url)
    return EvidenceCounts(unique_entries=len(unique), recent_entries=len(recent))
