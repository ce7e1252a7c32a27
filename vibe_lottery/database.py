"""SQLite ledger for vibe-lottery.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Every balance-affecting method is one read-check-write unit inside
``BEGIN IMMEDIATE``: the write lock is taken before the read, so concurrent
requests for the same user serialize. A failed check returns an
``{"error": code, ...}`` dict and leaves the ledger untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, Callable

from .utils import parse_timestamp, to_db_timestamp


class LedgerDatabase:
    """SQLite-backed durable balances, tickets, pools and hand sessions."""

    def __init__(
        self,
        db_path: str,
        logger: logging.Logger,
        starting_chips: int = 100,
        starting_coins: int = 0,
    ) -> None:
        self._db_path = db_path
        self._logger = logger
        self._starting_chips = starting_chips
        self._starting_coins = starting_coins

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    chips INTEGER NOT NULL DEFAULT 0 CHECK (chips >= 0),
                    coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
                    is_shadowbanned BOOLEAN DEFAULT 0,
                    shadowbanned_at TIMESTAMP,
                    booster_expires_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS ad_watch_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    watched_at TIMESTAMP NOT NULL,
                    status TEXT NOT NULL,
                    week_id TEXT,
                    metadata TEXT
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS weekly_tickets (
                    user_id TEXT NOT NULL,
                    week_id TEXT NOT NULL,
                    organic_tickets INTEGER DEFAULT 0,
                    converted_tickets INTEGER DEFAULT 0,
                    fractional_remainder REAL DEFAULT 0,
                    UNIQUE(user_id, week_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS weekly_prize_pool (
                    week_id TEXT PRIMARY KEY,
                    base_amount INTEGER NOT NULL,
                    ad_revenue_added INTEGER DEFAULT 0,
                    updated_at TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS hand_sessions (
                    user_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    bet INTEGER NOT NULL,
                    player_hand TEXT NOT NULL,
                    dealer_hand TEXT NOT NULL,
                    deck TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS offer_completions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    provider_transaction_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    offer_id TEXT,
                    reward_type TEXT NOT NULL,
                    reward_amount INTEGER NOT NULL,
                    week_id TEXT,
                    raw_params TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(provider, provider_transaction_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    reason TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ad_watch_logs_user_time "
                "ON ad_watch_logs(user_id, watched_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_weekly_tickets_week "
                "ON weekly_tickets(week_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user "
                "ON transactions(user_id)"
            )
            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Sync helpers (caller owns the transaction)
    # ══════════════════════════════════════════════════════════

    def _ensure_user(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        conn.execute(
            "INSERT OR IGNORE INTO users (user_id, chips, coins) VALUES (?, ?, ?)",
            (user_id, self._starting_chips, self._starting_coins),
        )
        return conn.execute(
            "SELECT * FROM users WHERE user_id = ?", (user_id,),
        ).fetchone()

    @staticmethod
    def _log_tx(
        conn: sqlite3.Connection,
        user_id: str,
        currency: str,
        amount: int,
        tx_type: str,
        reason: str | None = None,
        metadata: str | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO transactions (user_id, currency, amount, type, reason, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, currency, amount, tx_type, reason, metadata),
        )

    @staticmethod
    def _week_totals(conn: sqlite3.Connection, week_id: str) -> tuple[int, int]:
        row = conn.execute(
            "SELECT COALESCE(SUM(organic_tickets), 0) AS organic, "
            "COALESCE(SUM(converted_tickets), 0) AS converted "
            "FROM weekly_tickets WHERE week_id = ?",
            (week_id,),
        ).fetchone()
        return row["organic"], row["converted"]

    @staticmethod
    def _attempts_since(conn: sqlite3.Connection, user_id: str, since_ts: str) -> int:
        """Every logged ad-view attempt, of any status, since ``since_ts``."""
        return conn.execute(
            "SELECT COUNT(*) AS cnt FROM ad_watch_logs WHERE user_id = ? AND watched_at >= ?",
            (user_id, since_ts),
        ).fetchone()["cnt"]

    @staticmethod
    def _row_to_hand(row: sqlite3.Row) -> dict:
        return {
            "session_id": row["session_id"],
            "bet": row["bet"],
            "player_hand": json.loads(row["player_hand"]),
            "dealer_hand": json.loads(row["dealer_hand"]),
            "deck": json.loads(row["deck"]),
            "status": row["status"],
        }

    # ══════════════════════════════════════════════════════════
    #  Users
    # ══════════════════════════════════════════════════════════

    async def get_or_create_user(self, user_id: str) -> dict:
        """Return user row as dict. Creates with starting balances if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                row = self._ensure_user(conn, user_id)
                conn.commit()
                return dict(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_user(self, user_id: str) -> dict | None:
        """Return user row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Ad views & fraud screening
    # ══════════════════════════════════════════════════════════

    async def screen_ad_view(
        self,
        user_id: str,
        now: datetime,
        day_start: datetime,
        week_id: str,
        min_gap_seconds: int,
    ) -> dict:
        """Screen one ad-view attempt and log it, atomically.

        Returns ``{"status": "shadowbanned", "newly_banned", "views", "booster_expires_at"}``
        (``views`` counts today's attempts of any status) or
        ``{"status": "valid", "previous_views", "views", "booster_expires_at"}``.
        Every attempt is logged, so the next call measures its gap from this one.
        """
        loop = asyncio.get_running_loop()
        now_ts = to_db_timestamp(now)
        day_start_ts = to_db_timestamp(day_start)

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = self._ensure_user(conn, user_id)
                last = conn.execute(
                    "SELECT watched_at FROM ad_watch_logs WHERE user_id = ? "
                    "ORDER BY watched_at DESC LIMIT 1",
                    (user_id,),
                ).fetchone()

                last_at = parse_timestamp(last["watched_at"]) if last else None
                if last_at is not None:
                    gap = (now - last_at).total_seconds()
                    if gap < min_gap_seconds:
                        already = bool(user["is_shadowbanned"])
                        conn.execute(
                            "UPDATE users SET is_shadowbanned = 1, "
                            "shadowbanned_at = COALESCE(shadowbanned_at, ?) WHERE user_id = ?",
                            (now_ts, user_id),
                        )
                        conn.execute(
                            "INSERT INTO ad_watch_logs (user_id, watched_at, status, week_id, metadata) "
                            "VALUES (?, ?, 'speed_check_failed', ?, ?)",
                            (user_id, now_ts, week_id, json.dumps({"gap_seconds": round(gap, 3)})),
                        )
                        attempts = self._attempts_since(conn, user_id, day_start_ts)
                        conn.commit()
                        return {
                            "status": "shadowbanned",
                            "newly_banned": not already,
                            "views": attempts,
                            "booster_expires_at": user["booster_expires_at"],
                        }

                if user["is_shadowbanned"]:
                    conn.execute(
                        "INSERT INTO ad_watch_logs (user_id, watched_at, status, week_id) "
                        "VALUES (?, ?, 'shadowbanned', ?)",
                        (user_id, now_ts, week_id),
                    )
                    attempts = self._attempts_since(conn, user_id, day_start_ts)
                    conn.commit()
                    return {
                        "status": "shadowbanned",
                        "newly_banned": False,
                        "views": attempts,
                        "booster_expires_at": user["booster_expires_at"],
                    }

                prev = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM ad_watch_logs "
                    "WHERE user_id = ? AND status = 'valid' AND watched_at >= ?",
                    (user_id, day_start_ts),
                ).fetchone()["cnt"]
                conn.execute(
                    "INSERT INTO ad_watch_logs (user_id, watched_at, status, week_id) "
                    "VALUES (?, ?, 'valid', ?)",
                    (user_id, now_ts, week_id),
                )
                conn.commit()
                return {
                    "status": "valid",
                    "previous_views": prev,
                    "views": prev + 1,
                    "booster_expires_at": user["booster_expires_at"],
                }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Tickets & prize pool
    # ══════════════════════════════════════════════════════════

    async def award_tickets(
        self, user_id: str, week_id: str, count: int, multiplier: float,
    ) -> int:
        """Add ``count × multiplier`` organic tickets; return the new weekly total.

        Fractions carry over in ``fractional_remainder`` so a 1.5× multiplier
        credits 1, 2, 1, 2, ... tickets on successive awards.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    "INSERT OR IGNORE INTO weekly_tickets (user_id, week_id) VALUES (?, ?)",
                    (user_id, week_id),
                )
                row = conn.execute(
                    "SELECT organic_tickets, fractional_remainder FROM weekly_tickets "
                    "WHERE user_id = ? AND week_id = ?",
                    (user_id, week_id),
                ).fetchone()
                total = row["fractional_remainder"] + count * multiplier
                whole = math.floor(total + 1e-9)
                remainder = max(0.0, total - whole)
                conn.execute(
                    "UPDATE weekly_tickets SET organic_tickets = organic_tickets + ?, "
                    "fractional_remainder = ? WHERE user_id = ? AND week_id = ?",
                    (whole, remainder, user_id, week_id),
                )
                conn.commit()
                return row["organic_tickets"] + whole
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_weekly_tickets(self, user_id: str, week_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM weekly_tickets WHERE user_id = ? AND week_id = ?",
                    (user_id, week_id),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_weekly_totals(self, week_id: str) -> tuple[int, int]:
        """Return (organic, converted) summed over all users for the week."""
        loop = asyncio.get_running_loop()

        def _sync() -> tuple[int, int]:
            conn = self._get_connection()
            try:
                return self._week_totals(conn, week_id)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def increment_pool(self, week_id: str, amount: int, base_amount: int) -> int:
        """Atomically add to the week's pool (creating it at ``base_amount``). Returns total."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                pool = self._add_to_pool(conn, week_id, amount, base_amount)
                conn.commit()
                return pool["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def add_revenue(self, week_id: str, amount: int, base_amount: int) -> dict:
        """Credit the users' share of ad revenue to the week's pool. Returns the pool row."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                pool = self._add_to_pool(conn, week_id, amount, base_amount)
                conn.commit()
                return pool
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    @staticmethod
    def _add_to_pool(
        conn: sqlite3.Connection, week_id: str, amount: int, base_amount: int,
    ) -> dict:
        conn.execute(
            "INSERT INTO weekly_prize_pool (week_id, base_amount, ad_revenue_added, updated_at) "
            "VALUES (?, ?, ?, CURRENT_TIMESTAMP) "
            "ON CONFLICT(week_id) DO UPDATE SET "
            "ad_revenue_added = ad_revenue_added + excluded.ad_revenue_added, "
            "updated_at = CURRENT_TIMESTAMP",
            (week_id, base_amount, amount),
        )
        row = conn.execute(
            "SELECT week_id, base_amount, ad_revenue_added, "
            "base_amount + ad_revenue_added AS total "
            "FROM weekly_prize_pool WHERE week_id = ?",
            (week_id,),
        ).fetchone()
        return dict(row)

    async def get_prize_pool(self, week_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT week_id, base_amount, ad_revenue_added, "
                    "base_amount + ad_revenue_added AS total "
                    "FROM weekly_prize_pool WHERE week_id = ?",
                    (week_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Booster
    # ══════════════════════════════════════════════════════════

    async def activate_booster(
        self, user_id: str, now: datetime, expires_at: datetime,
    ) -> dict:
        """Set booster expiry unless one is still running at ``now``."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = self._ensure_user(conn, user_id)
                current = parse_timestamp(user["booster_expires_at"])
                if current is not None and current > now:
                    conn.rollback()
                    return {"error": "booster_active", "expires_at": current.isoformat()}
                conn.execute(
                    "UPDATE users SET booster_expires_at = ? WHERE user_id = ?",
                    (to_db_timestamp(expires_at), user_id),
                )
                conn.commit()
                return {"expires_at": expires_at.isoformat()}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Wager settlement
    # ══════════════════════════════════════════════════════════

    async def settle_wager(
        self,
        user_id: str,
        stake: int,
        chip_payout: int,
        coin_payout: int = 0,
        tx_type: str = "wager",
        reason: str | None = None,
        metadata: str | None = None,
    ) -> dict:
        """Debit ``stake`` and credit the payouts in one unit.

        Returns ``{"new_chips", "new_coins"}`` or
        ``{"error": "insufficient_chips", "have", "need"}``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = self._ensure_user(conn, user_id)
                if user["chips"] < stake:
                    conn.rollback()
                    return {"error": "insufficient_chips", "have": user["chips"], "need": stake}
                conn.execute(
                    "UPDATE users SET chips = chips - ? + ?, coins = coins + ? WHERE user_id = ?",
                    (stake, chip_payout, coin_payout, user_id),
                )
                if stake:
                    self._log_tx(conn, user_id, "chips", -stake, f"{tx_type}_stake", reason, metadata)
                if chip_payout:
                    self._log_tx(conn, user_id, "chips", chip_payout, f"{tx_type}_payout", reason, metadata)
                if coin_payout:
                    self._log_tx(conn, user_id, "coins", coin_payout, f"{tx_type}_payout", reason, metadata)
                row = conn.execute(
                    "SELECT chips, coins FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                conn.commit()
                return {"new_chips": row["chips"], "new_coins": row["coins"]}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Hand sessions
    # ══════════════════════════════════════════════════════════

    async def open_hand(self, user_id: str, session: dict, payout: int = 0) -> dict:
        """Debit the bet and persist a freshly dealt hand.

        A hand dealt already ``complete`` (natural) is settled with ``payout``
        and never stored. Rejects when a session is active or funds are short.
        """
        loop = asyncio.get_running_loop()
        bet = session["bet"]

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = self._ensure_user(conn, user_id)
                existing = conn.execute(
                    "SELECT session_id FROM hand_sessions WHERE user_id = ?", (user_id,),
                ).fetchone()
                if existing:
                    conn.rollback()
                    return {"error": "active_session_exists", "session_id": existing["session_id"]}
                if user["chips"] < bet:
                    conn.rollback()
                    return {"error": "insufficient_chips", "have": user["chips"], "need": bet}

                conn.execute(
                    "UPDATE users SET chips = chips - ? WHERE user_id = ?", (bet, user_id),
                )
                self._log_tx(conn, user_id, "chips", -bet, "blackjack_stake",
                             reason=f"Hand {session['session_id']}")
                if session["status"] == "complete":
                    if payout:
                        conn.execute(
                            "UPDATE users SET chips = chips + ? WHERE user_id = ?", (payout, user_id),
                        )
                        self._log_tx(conn, user_id, "chips", payout, "blackjack_payout",
                                     reason=f"Hand {session['session_id']}: {session.get('result')}")
                else:
                    conn.execute(
                        "INSERT INTO hand_sessions (user_id, session_id, bet, player_hand, "
                        "dealer_hand, deck, status) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            user_id, session["session_id"], bet,
                            json.dumps(session["player_hand"]),
                            json.dumps(session["dealer_hand"]),
                            json.dumps(session["deck"]),
                            session["status"],
                        ),
                    )
                row = conn.execute(
                    "SELECT chips FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                conn.commit()
                return {"new_chips": row["chips"]}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def advance_hand(
        self, user_id: str, transition: Callable[[dict], dict],
    ) -> dict:
        """Apply a pure ``transition`` to the user's active hand, atomically.

        ``transition`` receives the persisted session and returns the next one.
        A ``complete`` result is paid out (``payout`` key) and cleared; anything
        else is written back. Returns ``{"session", "new_chips"}`` or
        ``{"error": "no_active_session"}``.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT * FROM hand_sessions WHERE user_id = ?", (user_id,),
                ).fetchone()
                if row is None:
                    conn.rollback()
                    return {"error": "no_active_session"}

                session = transition(self._row_to_hand(row))
                if session["status"] == "complete":
                    payout = session.get("payout", 0)
                    if payout:
                        conn.execute(
                            "UPDATE users SET chips = chips + ? WHERE user_id = ?",
                            (payout, user_id),
                        )
                        self._log_tx(conn, user_id, "chips", payout, "blackjack_payout",
                                     reason=f"Hand {session['session_id']}: {session.get('result')}")
                    conn.execute("DELETE FROM hand_sessions WHERE user_id = ?", (user_id,))
                else:
                    conn.execute(
                        "UPDATE hand_sessions SET player_hand = ?, dealer_hand = ?, deck = ?, "
                        "status = ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?",
                        (
                            json.dumps(session["player_hand"]),
                            json.dumps(session["dealer_hand"]),
                            json.dumps(session["deck"]),
                            session["status"],
                            user_id,
                        ),
                    )
                user = conn.execute(
                    "SELECT chips FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                conn.commit()
                return {"session": session, "new_chips": user["chips"] if user else 0}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_hand(self, user_id: str) -> dict | None:
        """Return the persisted active hand, or None."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM hand_sessions WHERE user_id = ?", (user_id,),
                ).fetchone()
                return self._row_to_hand(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Chip → ticket conversion
    # ══════════════════════════════════════════════════════════

    async def convert_chips(
        self, user_id: str, week_id: str, amount: int, cap_percent: int,
    ) -> dict:
        """Debit chips 1:1 into converted tickets, bounded by the weekly cap."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = self._ensure_user(conn, user_id)
                organic, converted = self._week_totals(conn, week_id)
                cap_limit = organic * cap_percent // 100
                remaining = max(0, cap_limit - converted)

                if remaining == 0:
                    conn.rollback()
                    return {"error": "cap_reached", "remaining_cap": 0}
                if amount > remaining:
                    conn.rollback()
                    return {"error": "exceeds_cap", "remaining_cap": remaining}
                if user["chips"] < amount:
                    conn.rollback()
                    return {
                        "error": "insufficient_chips",
                        "have": user["chips"],
                        "need": amount,
                        "remaining_cap": remaining,
                    }

                conn.execute(
                    "UPDATE users SET chips = chips - ? WHERE user_id = ?", (amount, user_id),
                )
                conn.execute(
                    "INSERT OR IGNORE INTO weekly_tickets (user_id, week_id) VALUES (?, ?)",
                    (user_id, week_id),
                )
                conn.execute(
                    "UPDATE weekly_tickets SET converted_tickets = converted_tickets + ? "
                    "WHERE user_id = ? AND week_id = ?",
                    (amount, user_id, week_id),
                )
                self._log_tx(conn, user_id, "chips", -amount, "conversion",
                             reason=f"Converted to tickets ({week_id})")
                chips = conn.execute(
                    "SELECT chips FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()["chips"]
                new_converted = conn.execute(
                    "SELECT converted_tickets FROM weekly_tickets WHERE user_id = ? AND week_id = ?",
                    (user_id, week_id),
                ).fetchone()["converted_tickets"]
                conn.commit()
                return {
                    "chips_spent": amount,
                    "new_chips": chips,
                    "new_converted": new_converted,
                    "remaining_cap": remaining - amount,
                    "global_organic": organic,
                    "global_converted": converted + amount,
                    "cap_limit": cap_limit,
                }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Offerwall completions
    # ══════════════════════════════════════════════════════════

    async def award_offer_completion(
        self,
        user_id: str,
        week_id: str,
        provider: str,
        transaction_id: str,
        offer_id: str,
        reward_type: str,
        amount: int,
        raw_params: dict | None = None,
    ) -> dict:
        """Record one provider completion and credit its reward, at most once.

        Returns ``{"status": "unknown_user" | "duplicate" | "awarded" | "recorded"}``;
        ``recorded`` means the completion was stored but its reward type pays nothing
        here. A replayed ``(provider, transaction_id)`` changes nothing.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                user = conn.execute(
                    "SELECT user_id FROM users WHERE user_id = ?", (user_id,),
                ).fetchone()
                if user is None:
                    conn.rollback()
                    return {"status": "unknown_user"}

                cur = conn.execute(
                    "INSERT OR IGNORE INTO offer_completions "
                    "(provider, provider_transaction_id, user_id, offer_id, reward_type, "
                    "reward_amount, week_id, raw_params) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (provider, transaction_id, user_id, offer_id, reward_type, amount,
                     week_id, json.dumps(raw_params or {})),
                )
                if cur.rowcount == 0:
                    conn.rollback()
                    return {"status": "duplicate"}

                reason = f"Offer {offer_id} via {provider}"
                if reward_type == "tickets":
                    conn.execute(
                        "INSERT OR IGNORE INTO weekly_tickets (user_id, week_id) VALUES (?, ?)",
                        (user_id, week_id),
                    )
                    conn.execute(
                        "UPDATE weekly_tickets SET organic_tickets = organic_tickets + ? "
                        "WHERE user_id = ? AND week_id = ?",
                        (amount, user_id, week_id),
                    )
                    self._log_tx(conn, user_id, "tickets", amount, "offer", reason=reason)
                elif reward_type in ("chips", "coins"):
                    conn.execute(
                        f"UPDATE users SET {reward_type} = {reward_type} + ? WHERE user_id = ?",
                        (amount, user_id),
                    )
                    self._log_tx(conn, user_id, reward_type, amount, "offer", reason=reason)
                else:
                    conn.commit()
                    return {"status": "recorded"}

                conn.commit()
                return {"status": "awarded", "reward_type": reward_type, "amount": amount}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_offer_completion(self, provider: str, transaction_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM offer_completions "
                    "WHERE provider = ? AND provider_transaction_id = ?",
                    (provider, transaction_id),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  History
    # ══════════════════════════════════════════════════════════

    async def get_recent_transactions(self, user_id: str, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE user_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
