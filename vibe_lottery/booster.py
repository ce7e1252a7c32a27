"""Booster manager: time-boxed 1.5× ticket multiplier.

A booster is activated either by uploading a browsing-history export that
clears both evidence thresholds, or by purchase through a payment gateway.
It lasts a fixed window and cannot be stacked or extended while running.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from .errors import CoreError, core_error, from_ledger
from .evidence import EvidenceError, count_evidence, parse_evidence
from .utils import now_utc, parse_timestamp

if TYPE_CHECKING:
    from .config import LotteryConfig
    from .database import LedgerDatabase


class PaymentGateway(Protocol):
    async def confirm(self, user_id: str) -> str:
        """Charge the user for one booster; return a receipt reference."""
        ...


class InstantPaymentGateway:
    """Gateway that confirms every purchase immediately."""

    async def confirm(self, user_id: str) -> str:
        return f"instant-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class BoosterActivation:
    expires_at: datetime
    method: str
    unique_entries: int = 0
    recent_entries: int = 0
    receipt: str | None = None

    def to_dict(self) -> dict:
        return {
            "expires_at": self.expires_at.isoformat(),
            "method": self.method,
            "unique_entries": self.unique_entries,
            "recent_entries": self.recent_entries,
            "receipt": self.receipt,
        }


def is_active(expires_at: datetime | str | None, now: datetime) -> bool:
    """A booster is active iff it has an expiry strictly after ``now``."""
    if isinstance(expires_at, str):
        expires_at = parse_timestamp(expires_at)
    return expires_at is not None and expires_at > now


class BoosterManager:
    """Activation paths and the multipliers an active booster grants."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
        payment_gateway: PaymentGateway | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self._payments = payment_gateway or InstantPaymentGateway()

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    # ══════════════════════════════════════════════════════════
    #  Multipliers
    # ══════════════════════════════════════════════════════════

    def ticket_multiplier(self, expires_at: datetime | str | None, now: datetime) -> float:
        return self._config.booster.ticket_multiplier if is_active(expires_at, now) else 1.0

    def pool_increment(self, expires_at: datetime | str | None, now: datetime) -> int:
        cfg = self._config.prize_pool
        return cfg.boosted_increment_per_view if is_active(expires_at, now) else cfg.increment_per_view

    # ══════════════════════════════════════════════════════════
    #  Activation
    # ══════════════════════════════════════════════════════════

    async def _existing_conflict(self, user_id: str, now: datetime) -> CoreError | None:
        user = await self._db.get_user(user_id)
        expires = parse_timestamp(user["booster_expires_at"]) if user else None
        if is_active(expires, now):
            return core_error(
                "booster_active", f"Booster is already active until {expires.isoformat()}.",
                expires_at=expires.isoformat(),
            )
        return None

    async def activate_with_evidence(
        self,
        user_id: str,
        text: str,
        format_hint: str | None = None,
        now: datetime | None = None,
    ) -> BoosterActivation | CoreError:
        """Validate a browsing-history export and start the booster."""
        now = now or now_utc()
        cfg = self._config.booster

        conflict = await self._existing_conflict(user_id, now)
        if conflict:
            return conflict

        if len(text.encode("utf-8")) > cfg.max_evidence_bytes:
            return core_error(
                "evidence_too_large",
                f"File too large. Maximum {cfg.max_evidence_bytes // (1024 * 1024)}MB.",
            )

        try:
            entries, has_dates = parse_evidence(text, format_hint)
        except EvidenceError:
            return core_error(
                "invalid_evidence",
                "Unable to parse file. Please upload a valid JSON or CSV history export.",
            )
        counts = count_evidence(entries, now, cfg.recent_window_days, has_dates)
        # Only the counts survive past this point.
        del entries, text

        if counts.unique_entries == 0:
            return core_error(
                "invalid_evidence", "No browsing history entries found in file.",
                unique_entries=0, recent_entries=0,
            )
        if counts.unique_entries < cfg.min_unique_entries:
            return core_error(
                "insufficient_evidence",
                f"Not enough unique entries. Found {counts.unique_entries}, "
                f"need at least {cfg.min_unique_entries}.",
                unique_entries=counts.unique_entries,
                recent_entries=counts.recent_entries,
                required=cfg.min_unique_entries,
            )
        if counts.recent_entries < cfg.min_recent_entries:
            return core_error(
                "insufficient_evidence",
                f"Not enough recent entries (last {cfg.recent_window_days} days). "
                f"Found {counts.recent_entries}, need at least {cfg.min_recent_entries}.",
                unique_entries=counts.unique_entries,
                recent_entries=counts.recent_entries,
                required=cfg.min_recent_entries,
            )

        result = await self._activate(user_id, now)
        if isinstance(result, CoreError):
            return result
        self._logger.info(
            "Booster activated for %s via evidence (%d unique, %d recent)",
            user_id, counts.unique_entries, counts.recent_entries,
        )
        return BoosterActivation(
            expires_at=result,
            method="evidence",
            unique_entries=counts.unique_entries,
            recent_entries=counts.recent_entries,
        )

    async def activate_with_payment(
        self, user_id: str, now: datetime | None = None,
    ) -> BoosterActivation | CoreError:
        """Charge through the payment gateway and start the booster."""
        now = now or now_utc()
        conflict = await self._existing_conflict(user_id, now)
        if conflict:
            return conflict

        receipt = await self._payments.confirm(user_id)
        result = await self._activate(user_id, now)
        if isinstance(result, CoreError):
            return result
        self._logger.info("Booster purchased by %s (receipt %s)", user_id, receipt)
        return BoosterActivation(expires_at=result, method="payment", receipt=receipt)

    async def _activate(self, user_id: str, now: datetime) -> datetime | CoreError:
        expires_at = now + timedelta(hours=self._config.booster.duration_hours)
        row = await self._db.activate_booster(user_id, now, expires_at)
        if "error" in row:
            return from_ledger(row)
        return expires_at
