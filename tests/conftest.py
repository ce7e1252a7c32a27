"""Shared test fixtures for vibe-lottery."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from vibe_lottery.ad_rewards import AdRewardService
from vibe_lottery.blackjack import BlackjackEngine
from vibe_lottery.booster import BoosterManager
from vibe_lottery.casino_engine import CasinoEngine
from vibe_lottery.config import LotteryConfig
from vibe_lottery.conversion import ConversionCapTracker
from vibe_lottery.database import LedgerDatabase
from vibe_lottery.fraud_gate import FraudGate

# Monday 2026-03-02 03:00 UTC = 12:00 JST, ISO week 2026-W10
NOW = datetime(2026, 3, 2, 3, 0, 0, tzinfo=timezone.utc)
WEEK = "2026-W10"


# ── Minimal config dict matching LotteryConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "server": {"host": "127.0.0.1", "port": 0},
        "onboarding": {"starting_chips": 100, "starting_coins": 0},
        "fraud": {"min_seconds_between_views": 30},
        "booster": {
            "duration_hours": 24,
            "ticket_multiplier": 1.5,
            "min_unique_entries": 500,
            "min_recent_entries": 500,
            "recent_window_days": 30,
        },
        "wagers": {"max_bet": 500, "max_selections": 3},
        "conversion": {"cap_percent": 30, "min_amount": 1, "max_amount": 1000},
    }
    base.update(overrides)
    return base


async def set_balance(db: LedgerDatabase, user_id: str, chips: int, coins: int = 0) -> None:
    """Create the user if needed and force its balances."""
    await db.get_or_create_user(user_id)
    loop = asyncio.get_running_loop()

    def _set():
        conn = db._get_connection()
        try:
            conn.execute(
                "UPDATE users SET chips = ?, coins = ? WHERE user_id = ?",
                (chips, coins, user_id),
            )
            conn.commit()
        finally:
            conn.close()

    await loop.run_in_executor(None, _set)


async def seed_tickets(
    db: LedgerDatabase, user_id: str, week_id: str, organic: int, converted: int = 0,
) -> None:
    """Insert a weekly_tickets row directly."""
    loop = asyncio.get_running_loop()

    def _seed():
        conn = db._get_connection()
        try:
            conn.execute(
                "INSERT INTO weekly_tickets (user_id, week_id, organic_tickets, converted_tickets) "
                "VALUES (?, ?, ?, ?)",
                (user_id, week_id, organic, converted),
            )
            conn.commit()
        finally:
            conn.close()

    await loop.run_in_executor(None, _seed)


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> LotteryConfig:
    """Return a parsed LotteryConfig."""
    return LotteryConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_lottery.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[LedgerDatabase, None]:
    """Provide an initialized ledger with temp file."""
    db = LedgerDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest_asyncio.fixture
async def fraud_gate(sample_config: LotteryConfig, database: LedgerDatabase) -> FraudGate:
    return FraudGate(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def booster(sample_config: LotteryConfig, database: LedgerDatabase) -> BoosterManager:
    return BoosterManager(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def ad_rewards(
    sample_config: LotteryConfig,
    database: LedgerDatabase,
    fraud_gate: FraudGate,
    booster: BoosterManager,
) -> AdRewardService:
    """AdRewardService with test dependencies."""
    return AdRewardService(
        sample_config, database, fraud_gate, booster, logging.getLogger("test"),
    )


@pytest_asyncio.fixture
async def casino_engine(sample_config: LotteryConfig, database: LedgerDatabase) -> CasinoEngine:
    return CasinoEngine(sample_config, database, logging.getLogger("test"))


@pytest_asyncio.fixture
async def blackjack_engine(
    sample_config: LotteryConfig,
    database: LedgerDatabase,
    casino_engine: CasinoEngine,
) -> BlackjackEngine:
    """BlackjackEngine sharing the casino's stats counters."""
    return BlackjackEngine(
        sample_config, database, logging.getLogger("test"), stats=casino_engine.stats,
    )


@pytest_asyncio.fixture
async def conversion(sample_config: LotteryConfig, database: LedgerDatabase) -> ConversionCapTracker:
    return ConversionCapTracker(sample_config, database, logging.getLogger("test"))
