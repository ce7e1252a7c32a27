"""Prometheus metrics and health endpoints for vibe-lottery.

Served from the same aiohttp application as the API routes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from aiohttp import web

from .utils import iso_week_str

if TYPE_CHECKING:
    from .main import LotteryApp


class LotteryMetricsServer:
    """Lottery-specific Prometheus metrics endpoint."""

    def __init__(self, app: LotteryApp) -> None:
        self._app = app

    def register(self, web_app: web.Application) -> None:
        cfg = self._app.config.server
        web_app.router.add_get(cfg.metrics_path, self.handle_metrics)
        web_app.router.add_get(cfg.health_path, self.handle_health)

    async def handle_metrics(self, request: web.Request) -> web.Response:
        lines = await self._collect_custom_metrics()
        return web.Response(text="\n".join(lines) + "\n", content_type="text/plain")

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", **await self._get_health_details()})

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect service counters and weekly gauges."""
        lines: list[str] = []
        ads = self._app.ad_rewards
        casino = self._app.casino.stats

        # ── Counters ─────────────────────────────────────────
        lines.append(f"lottery_ad_views_verified_total {ads.views_verified}")
        lines.append(f"lottery_shadowban_hits_total {self._app.fraud_gate.shadowban_hits}")
        lines.append(f"lottery_tickets_awarded_total {ads.tickets_awarded}")
        lines.append(f"lottery_pool_increment_failures_total {ads.pool_failures}")
        lines.append(f"lottery_wagers_settled_total {casino.wagers_settled}")
        lines.append(f"lottery_chips_wagered_total {casino.chips_wagered}")
        lines.append(f"lottery_chips_paid_out_total {casino.chips_paid_out}")
        for game, count in sorted(casino.by_game.items()):
            lines.append(f'lottery_wagers_settled_by_game_total{{game="{game}"}} {count}')
        lines.append(f"lottery_conversions_total {self._app.conversion.conversions_total}")
        offers = self._app.offerwall
        lines.append(f"lottery_offer_completions_total {offers.completions_awarded}")
        lines.append(f"lottery_offer_duplicates_total {offers.duplicates}")
        lines.append(f"lottery_offer_postbacks_ignored_total {offers.ignored}")
        lines.append(f"lottery_revenue_synced_total {ads.revenue_synced}")

        # ── Weekly gauges ────────────────────────────────────
        week_id = iso_week_str()
        tag = f'week="{week_id}"'
        cap = await self._app.conversion.status(week_id)
        lines.append(f"lottery_organic_tickets{{{tag}}} {cap.global_organic}")
        lines.append(f"lottery_converted_tickets{{{tag}}} {cap.global_converted}")
        lines.append(f"lottery_conversion_remaining_cap{{{tag}}} {cap.remaining_cap}")
        pool = await ads.get_prize_pool(week_id)
        lines.append(f"lottery_prize_pool_total{{{tag}}} {pool['total']}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        return {
            "database": self._app.db.path if self._app.db else "disconnected",
            "uptime_seconds": round(self._app.uptime_seconds, 1),
        }
