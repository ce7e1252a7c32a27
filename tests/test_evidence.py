"""Tests for browsing-history evidence parsing."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW

from vibe_lottery.evidence import (
    EvidenceError,
    HistoryEntry,
    RecordArrayParser,
    TabularParser,
    count_evidence,
    parse_evidence,
    parse_visit_time,
)

STAMP = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestParseVisitTime:
    def test_epoch_seconds(self):
        assert parse_visit_time(int(STAMP.timestamp())) == STAMP

    def test_epoch_milliseconds(self):
        assert parse_visit_time(int(STAMP.timestamp() * 1000)) == STAMP

    def test_takeout_microseconds(self):
        assert parse_visit_time(str(int(STAMP.timestamp()) * 1_000_000)) == STAMP

    def test_iso_text(self):
        assert parse_visit_time("2026-03-01T12:00:00Z") == STAMP
        assert parse_visit_time("2026-03-01 12:00:00") == STAMP

    @pytest.mark.parametrize("value", [None, "", "yesterday", 12345, True])
    def test_unusable_values(self, value):
        assert parse_visit_time(value) is None


class TestRecordArrayParser:
    def test_plain_array_with_aliases(self):
        text = json.dumps([
            {"url": "https://a.example", "visitTime": "2026-03-01T12:00:00Z"},
            {"URL": "https://b.example", "lastVisitTime": int(STAMP.timestamp() * 1000)},
            {"uri": "https://c.example"},
            {"title": "no url here"},
            "not a record",
        ])
        entries = RecordArrayParser().parse(text)
        assert [e.url for e in entries] == ["https://a.example", "https://b.example", "https://c.example"]
        assert entries[0].visited_at == STAMP
        assert entries[1].visited_at == STAMP
        assert entries[2].visited_at is None

    def test_takeout_wrapper(self):
        usec = int(STAMP.timestamp()) * 1_000_000
        text = json.dumps({"Browser History": [{"url": "https://a.example", "time_usec": usec}]})
        entries = RecordArrayParser().parse(text)
        assert entries == [HistoryEntry("https://a.example", STAMP)]

    def test_first_list_property(self):
        text = json.dumps({"meta": {"v": 1}, "visits": [{"url": "https://a.example"}]})
        assert len(RecordArrayParser().parse(text)) == 1

    def test_scalar_json_rejected(self):
        with pytest.raises(EvidenceError):
            RecordArrayParser().parse("42")

    def test_invalid_json_rejected(self):
        with pytest.raises(EvidenceError):
            RecordArrayParser().parse("{nope")

    def test_deep_nesting_rejected(self):
        with pytest.raises(EvidenceError):
            RecordArrayParser().parse("[" * 100_000 + "]" * 100_000)


class TestTabularParser:
    def test_url_and_date_columns(self):
        text = 'Title,URL,"Visit Time"\nA,https://a.example,2026-03-01T12:00:00Z\nB,https://b.example,\n'
        parser = TabularParser()
        entries = parser.parse(text)
        assert parser.has_dates
        assert entries == [
            HistoryEntry("https://a.example", STAMP),
            HistoryEntry("https://b.example", None),
        ]

    def test_missing_date_column(self):
        parser = TabularParser()
        entries = parser.parse("address\nhttps://a.example\nhttps://b.example\n")
        assert not parser.has_dates
        assert len(entries) == 2

    def test_missing_url_column(self):
        with pytest.raises(EvidenceError):
            TabularParser().parse("title,date\nA,2026-03-01\n")

    def test_header_only(self):
        with pytest.raises(EvidenceError):
            TabularParser().parse("url,date\n")

    def test_oversized_field_rejected(self):
        huge = "https://a.example/" + "x" * 200_000
        with pytest.raises(EvidenceError):
            TabularParser().parse(f'url,date\n"{huge}",2026-03-01\n')


class TestParseEvidence:
    def test_hint_selects_csv(self):
        entries, has_dates = parse_evidence("url\nhttps://a.example\n", "history.csv")
        assert len(entries) == 1
        assert not has_dates

    def test_detects_json(self):
        entries, has_dates = parse_evidence('[{"url": "https://a.example"}]')
        assert len(entries) == 1
        assert has_dates

    def test_falls_back_to_csv(self):
        entries, _ = parse_evidence("url,date\nhttps://a.example,2026-03-01\n")
        assert entries[0].url == "https://a.example"

    def test_unparseable(self):
        with pytest.raises(EvidenceError):
            parse_evidence("just some words")


class TestCountEvidence:
    def test_unique_and_recent(self):
        old = NOW - timedelta(days=45)
        fresh = NOW - timedelta(days=2)
        entries = [
            HistoryEntry("https://a.example", fresh),
            HistoryEntry("https://a.example", old),
            HistoryEntry("https://b.example", old),
            HistoryEntry("https://c.example", None),
        ]
        counts = count_evidence(entries, NOW, 30)
        assert counts.unique_entries == 3
        assert counts.recent_entries == 1

    def test_no_dates_counts_everything_recent(self):
        entries = [HistoryEntry(f"https://{i}.example", None) for i in range(5)]
        counts = count_evidence(entries, NOW, 30, has_dates=False)
        assert counts == (5, 5)
