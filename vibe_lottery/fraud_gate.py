"""Rate-based fraud gate for ad-view verification.

Two views closer than the configured gap mark the user shadowbanned. The
flag is sticky: there is no decay, and only an external process clears it.
A shadowbanned caller still sees a normal success with zero reward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import LotteryConfig
    from .database import LedgerDatabase


@dataclass(frozen=True)
class FraudVerdict:
    """Outcome of screening one ad-view attempt."""

    allowed: bool
    newly_banned: bool = False
    previous_views: int = 0
    views: int = 0
    booster_expires_at: str | None = None


class FraudGate:
    """Screens ad-view attempts; every attempt is logged by the ledger."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self.shadowban_hits: int = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def screen(
        self, user_id: str, now: datetime, day_start: datetime, week_id: str,
    ) -> FraudVerdict:
        row = await self._db.screen_ad_view(
            user_id, now, day_start, week_id,
            self._config.fraud.min_seconds_between_views,
        )
        if row["status"] != "valid":
            self.shadowban_hits += 1
            if row.get("newly_banned"):
                self._logger.warning(
                    "Shadowbanned %s: ad views less than %ds apart",
                    user_id, self._config.fraud.min_seconds_between_views,
                )
            else:
                self._logger.warning("Ad view from shadowbanned user %s ignored", user_id)
            return FraudVerdict(
                allowed=False,
                newly_banned=bool(row.get("newly_banned")),
                views=row.get("views", 0),
                booster_expires_at=row.get("booster_expires_at"),
            )

        return FraudVerdict(
            allowed=True,
            previous_views=row["previous_views"],
            views=row["views"],
            booster_expires_at=row.get("booster_expires_at"),
        )
