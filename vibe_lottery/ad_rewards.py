"""Ad reward service — the ad-view verification pipeline.

fraud screen → daily view count → tier boundary check → ticket award
(booster-scaled) → best-effort prize-pool increment.

The ticket award is binding: once the screen passes, a pool failure is logged
and the last-known total is reported instead.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from . import tiers
from .booster import is_active
from .errors import CoreError, core_error
from .utils import day_start_utc, iso_week_str, now_utc

if TYPE_CHECKING:
    from .booster import BoosterManager
    from .config import LotteryConfig
    from .database import LedgerDatabase
    from .fraud_gate import FraudGate

WEEK_ID_RE = re.compile(r"^\d{4}-W\d{2}$")


@dataclass
class AdViewResult:
    """What the caller sees after one ad view."""

    ticket_earned: bool
    new_ticket_count: int | None
    new_pool_total: int
    daily_views: int
    current_tier: int
    ads_per_ticket: int
    views_until_next_ticket: int
    booster_active: bool

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RevenueSync:
    week_id: str
    gross_revenue: int
    user_share: int
    pool: dict

    def to_dict(self) -> dict:
        return asdict(self)


class AdRewardService:
    """Verifies ad views and awards tickets."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        fraud_gate: FraudGate,
        booster: BoosterManager,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._fraud_gate = fraud_gate
        self._booster = booster
        self._logger = logger

        # Advisory display only: week_id → last pool total seen
        self._last_pool_total: dict[str, int] = {}

        # Counters (for metrics)
        self.views_verified: int = 0
        self.tickets_awarded: int = 0
        self.pool_failures: int = 0
        self.revenue_synced: int = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def verify_ad_view(
        self, user_id: str, now: datetime | None = None,
    ) -> AdViewResult:
        now = now or now_utc()
        week_id = iso_week_str(now)
        day_start = day_start_utc(now, self._config.tiers.day_utc_offset_hours)

        verdict = await self._fraud_gate.screen(user_id, now, day_start, week_id)
        if not verdict.allowed:
            # Same shape and values as a genuine view that earned nothing.
            shown = tiers.quiet_view_count(verdict.views)
            meta = tiers.tier_meta(shown)
            return AdViewResult(
                ticket_earned=False,
                new_ticket_count=None,
                new_pool_total=await self._display_pool_total(week_id),
                daily_views=shown,
                current_tier=meta.current_tier,
                ads_per_ticket=meta.ads_per_ticket,
                views_until_next_ticket=meta.views_until_next_ticket,
                booster_active=is_active(verdict.booster_expires_at, now),
            )

        self.views_verified += 1
        boosted = is_active(verdict.booster_expires_at, now)

        new_ticket_count: int | None = None
        ticket_earned = tiers.earns_ticket(verdict.views)
        if ticket_earned:
            multiplier = self._booster.ticket_multiplier(verdict.booster_expires_at, now)
            new_ticket_count = await self._db.award_tickets(user_id, week_id, 1, multiplier)
            self.tickets_awarded += 1

        increment = self._booster.pool_increment(verdict.booster_expires_at, now)
        pool_total = await self._increment_pool(week_id, increment)

        meta = tiers.tier_meta(verdict.views)
        return AdViewResult(
            ticket_earned=ticket_earned,
            new_ticket_count=new_ticket_count,
            new_pool_total=pool_total,
            daily_views=verdict.views,
            current_tier=meta.current_tier,
            ads_per_ticket=meta.ads_per_ticket,
            views_until_next_ticket=meta.views_until_next_ticket,
            booster_active=boosted,
        )

    # ══════════════════════════════════════════════════════════
    #  Prize pool (best-effort)
    # ══════════════════════════════════════════════════════════

    async def _increment_pool(self, week_id: str, amount: int) -> int:
        try:
            total = await self._db.increment_pool(
                week_id, amount, self._config.prize_pool.base_amount,
            )
        except Exception:
            self.pool_failures += 1
            self._logger.exception("Prize pool increment failed for %s", week_id)
            return self._last_pool_total.get(week_id, self._config.prize_pool.base_amount)
        self._last_pool_total[week_id] = total
        return total

    async def _display_pool_total(self, week_id: str) -> int:
        try:
            pool = await self._db.get_prize_pool(week_id)
        except Exception:
            self._logger.exception("Prize pool read failed for %s", week_id)
            pool = None
        if pool:
            return pool["total"]
        return self._last_pool_total.get(week_id, self._config.prize_pool.base_amount)

    async def get_prize_pool(self, week_id: str | None = None) -> dict:
        week_id = week_id or iso_week_str()
        pool = await self._db.get_prize_pool(week_id)
        if pool:
            return pool
        base = self._config.prize_pool.base_amount
        return {"week_id": week_id, "base_amount": base, "ad_revenue_added": 0, "total": base}

    # ══════════════════════════════════════════════════════════
    #  Admin: revenue sync
    # ══════════════════════════════════════════════════════════

    async def sync_revenue(
        self, gross_revenue: object, week_id: object = None,
    ) -> RevenueSync | CoreError:
        """Add the users' share of reported ad revenue to the week's pool."""
        if isinstance(gross_revenue, bool) or not isinstance(gross_revenue, int) or gross_revenue < 0:
            return core_error("invalid_amount", "gross_revenue must be a non-negative integer.")
        if week_id is not None and (not isinstance(week_id, str) or not WEEK_ID_RE.match(week_id)):
            return core_error("invalid_week", "week_id must look like 2026-W10.")

        week_id = week_id or iso_week_str()
        share = gross_revenue * self._config.admin.revenue_share_percent // 100
        pool = await self._db.add_revenue(week_id, share, self._config.prize_pool.base_amount)
        self._last_pool_total[week_id] = pool["total"]
        self.revenue_synced += share
        self._logger.info(
            "Revenue sync %s: gross %d, pool share %d, pool now %d",
            week_id, gross_revenue, share, pool["total"],
        )
        return RevenueSync(week_id=week_id, gross_revenue=gross_revenue, user_share=share, pool=pool)
