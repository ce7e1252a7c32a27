"""Tests for booster activation and multipliers."""

from __future__ import annotations

import json
from datetime import timedelta

from conftest import NOW

from vibe_lottery.booster import BoosterActivation, BoosterManager, is_active
from vibe_lottery.database import LedgerDatabase
from vibe_lottery.errors import CoreError, ErrorKind


def _history(count: int, age_days: float = 1, offset: int = 0) -> str:
    visited = int((NOW - timedelta(days=age_days)).timestamp() * 1000)
    return json.dumps([
        {"url": f"https://site{offset + i}.example/page", "visitTime": visited}
        for i in range(count)
    ])


class FakeGateway:
    def __init__(self) -> None:
        self.charged: list[str] = []

    async def confirm(self, user_id: str) -> str:
        self.charged.append(user_id)
        return "rcpt-1"


class TestIsActive:
    def test_none_inactive(self):
        assert not is_active(None, NOW)

    def test_future_active(self):
        assert is_active(NOW + timedelta(seconds=1), NOW)

    def test_boundary_inactive(self):
        assert not is_active(NOW, NOW)

    def test_string_expiry(self):
        assert is_active((NOW + timedelta(hours=1)).isoformat(), NOW)


class TestEvidenceActivation:
    async def test_activates(self, booster: BoosterManager, database: LedgerDatabase):
        result = await booster.activate_with_evidence("alice", _history(500), now=NOW)
        assert isinstance(result, BoosterActivation)
        assert result.method == "evidence"
        assert result.unique_entries == 500
        assert result.recent_entries == 500
        assert result.expires_at == NOW + timedelta(hours=24)

        user = await database.get_user("alice")
        assert user["booster_expires_at"] is not None
        assert booster.ticket_multiplier(user["booster_expires_at"], NOW) == 1.5
        assert booster.pool_increment(user["booster_expires_at"], NOW) == 2

    async def test_second_activation_conflicts(self, booster: BoosterManager):
        await booster.activate_with_evidence("alice", _history(500), now=NOW)
        result = await booster.activate_with_evidence(
            "alice", _history(500), now=NOW + timedelta(hours=1),
        )
        assert isinstance(result, CoreError)
        assert result.kind is ErrorKind.CONFLICT
        assert result.code == "booster_active"
        assert result.details["expires_at"] == (NOW + timedelta(hours=24)).isoformat()

    async def test_reactivates_after_expiry(self, booster: BoosterManager):
        await booster.activate_with_evidence("alice", _history(500), now=NOW)
        later = NOW + timedelta(hours=25)
        result = await booster.activate_with_payment("alice", now=later)
        assert isinstance(result, BoosterActivation)
        assert result.expires_at == later + timedelta(hours=24)

    async def test_too_few_unique(self, booster: BoosterManager, database: LedgerDatabase):
        result = await booster.activate_with_evidence("alice", _history(499), now=NOW)
        assert result.code == "insufficient_evidence"
        assert result.kind is ErrorKind.INVALID_INPUT
        assert result.details["unique_entries"] == 499

        user = await database.get_user("alice")
        assert user is None or user["booster_expires_at"] is None

    async def test_too_few_recent(self, booster: BoosterManager):
        stale = json.loads(_history(300, age_days=60))
        fresh = json.loads(_history(300, offset=300))
        result = await booster.activate_with_evidence(
            "alice", json.dumps(stale + fresh), now=NOW,
        )
        assert result.code == "insufficient_evidence"
        assert result.details["unique_entries"] == 600
        assert result.details["recent_entries"] == 300

    async def test_duplicates_count_once(self, booster: BoosterManager):
        doubled = json.loads(_history(300)) * 2
        result = await booster.activate_with_evidence("alice", json.dumps(doubled), now=NOW)
        assert result.code == "insufficient_evidence"
        assert result.details["unique_entries"] == 300

    async def test_csv_without_dates(self, booster: BoosterManager):
        rows = "\n".join(f"https://site{i}.example" for i in range(500))
        result = await booster.activate_with_evidence(
            "alice", "url\n" + rows + "\n", format_hint="history.csv", now=NOW,
        )
        assert isinstance(result, BoosterActivation)
        assert result.recent_entries == 500

    async def test_unparseable(self, booster: BoosterManager):
        result = await booster.activate_with_evidence("alice", "hello", now=NOW)
        assert result.code == "invalid_evidence"

    async def test_oversized_csv_field(self, booster: BoosterManager):
        text = 'url,date\n"https://a.example/' + "x" * 200_000 + '",2026-03-01\n'
        result = await booster.activate_with_evidence("alice", text, format_hint="history.csv", now=NOW)
        assert result.code == "invalid_evidence"

    async def test_empty_history(self, booster: BoosterManager):
        result = await booster.activate_with_evidence("alice", "[]", now=NOW)
        assert result.code == "invalid_evidence"

    async def test_too_large(self, booster: BoosterManager):
        booster._config.booster.max_evidence_bytes = 100
        result = await booster.activate_with_evidence("alice", _history(10), now=NOW)
        assert result.code == "evidence_too_large"


class TestPaymentActivation:
    async def test_default_gateway(self, booster: BoosterManager):
        result = await booster.activate_with_payment("alice", now=NOW)
        assert result.method == "payment"
        assert result.receipt.startswith("instant-")

    async def test_custom_gateway(self, sample_config, database: LedgerDatabase):
        import logging

        gateway = FakeGateway()
        manager = BoosterManager(sample_config, database, logging.getLogger("test"), gateway)
        result = await manager.activate_with_payment("bob", now=NOW)
        assert result.receipt == "rcpt-1"
        assert gateway.charged == ["bob"]

    async def test_conflict_skips_charge(self, sample_config, database: LedgerDatabase):
        import logging

        gateway = FakeGateway()
        manager = BoosterManager(sample_config, database, logging.getLogger("test"), gateway)
        await manager.activate_with_payment("bob", now=NOW)
        result = await manager.activate_with_payment("bob", now=NOW + timedelta(minutes=5))
        assert result.code == "booster_active"
        assert gateway.charged == ["bob"]

    async def test_inactive_multipliers(self, booster: BoosterManager):
        assert booster.ticket_multiplier(None, NOW) == 1.0
        assert booster.pool_increment(None, NOW) == 1
