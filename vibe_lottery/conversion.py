"""Chip → ticket conversion under a weekly global cap.

Converted tickets across all users may not exceed a fixed share of the
week's organic (ad-earned) tickets. The cap check and the debit happen in
one ledger transaction.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from .errors import CoreError, core_error, from_ledger
from .utils import iso_week_str
from .wagers import coerce_bet

if TYPE_CHECKING:
    from .config import LotteryConfig
    from .database import LedgerDatabase


@dataclass
class CapStatus:
    week_id: str
    global_organic: int
    global_converted: int
    cap_limit: int
    remaining_cap: int
    cap_percent: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConversionResult:
    chips_spent: int
    new_chips: int
    new_converted: int
    remaining_cap: int
    global_organic: int
    global_converted: int
    cap_limit: int

    def to_dict(self) -> dict:
        return asdict(self)


def cap_limit(organic: int, cap_percent: int) -> int:
    return organic * cap_percent // 100


def remaining_cap(organic: int, converted: int, cap_percent: int) -> int:
    return max(0, cap_limit(organic, cap_percent) - converted)


class ConversionCapTracker:
    """Reports the weekly cap and converts chips within it."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self.conversions_total: int = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def status(self, week_id: str | None = None) -> CapStatus:
        week_id = week_id or iso_week_str()
        organic, converted = await self._db.get_weekly_totals(week_id)
        pct = self._config.conversion.cap_percent
        return CapStatus(
            week_id=week_id,
            global_organic=organic,
            global_converted=converted,
            cap_limit=cap_limit(organic, pct),
            remaining_cap=remaining_cap(organic, converted, pct),
            cap_percent=round(converted / organic * 100) if organic > 0 else 0,
        )

    async def convert(
        self, user_id: str, amount: Any, week_id: str | None = None,
    ) -> ConversionResult | CoreError:
        cfg = self._config.conversion
        value = coerce_bet(amount)
        if value is None or value < cfg.min_amount:
            return core_error("invalid_amount", "Invalid amount. Must be a positive integer.")
        if value > cfg.max_amount:
            return core_error(
                "amount_too_high",
                f"Cannot convert more than {cfg.max_amount} chips at once.",
                max=cfg.max_amount,
            )

        week_id = week_id or iso_week_str()
        row = await self._db.convert_chips(user_id, week_id, value, cfg.cap_percent)
        if "error" in row:
            return from_ledger(row)

        self.conversions_total += 1
        self._logger.info(
            "%s converted %d chips (%s remaining cap %d)",
            user_id, value, week_id, row["remaining_cap"],
        )
        return ConversionResult(**row)
