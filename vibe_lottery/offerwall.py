"""Offerwall postbacks — tickets for completed partner offers.

Providers call back (GET or POST) when a user finishes an offer. The call
carries a shared secret and a provider transaction id; a replayed id never
pays twice. Providers retry on anything except a plain ``1``, so every
authenticated callback is acknowledged, including ones that pay nothing.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Mapping, NamedTuple

from .errors import CoreError, core_error
from .utils import iso_week_str, now_utc

if TYPE_CHECKING:
    from .config import LotteryConfig
    from .database import LedgerDatabase


class Postback(NamedTuple):
    user_id: str
    offer_id: str
    transaction_id: str
    reward_amount: int
    reward_type: str
    provider: str


def _first(params: Mapping[str, str], *keys: str, default: str = "") -> str:
    for key in keys:
        value = params.get(key)
        if value:
            return str(value).strip()
    return default


def normalize_postback(params: Mapping[str, str], default_provider: str = "generic") -> Postback:
    """Map the parameter names used by different providers onto one shape."""
    raw_amount = _first(params, "currency", "rewardAmount", "reward", default="0")
    try:
        amount = int(float(raw_amount))
    except ValueError:
        amount = 0
    return Postback(
        user_id=_first(params, "sub_id1", "sub_id", "userId", "user_id"),
        offer_id=_first(params, "offer_id", "appKey", "campaign_id", default="unknown"),
        transaction_id=_first(params, "id", "transactionId", "transaction_id"),
        reward_amount=amount,
        reward_type=_first(params, "reward_type", default="tickets").lower(),
        provider=_first(params, "provider", default=default_provider),
    )


class OfferwallService:
    """Authenticates postbacks and credits each completion once."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

        self.completions_awarded: int = 0
        self.duplicates: int = 0
        self.ignored: int = 0

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    def authenticate(self, secret: str | None) -> bool:
        expected = self._config.offerwall.secret
        if not expected or not secret:
            return False
        return hmac.compare_digest(secret.encode("utf-8"), expected.encode("utf-8"))

    async def handle_postback(
        self,
        params: Mapping[str, str],
        secret: str | None,
        now: datetime | None = None,
    ) -> str | CoreError:
        """Credit one completion. Returns the ledger status, or ``unauthorized``."""
        if not self.authenticate(secret):
            self._logger.warning("Offerwall postback rejected: bad secret")
            return core_error("unauthorized", "Forbidden")

        postback = normalize_postback(params, self._config.offerwall.default_provider)
        if not postback.user_id or not postback.transaction_id:
            self.ignored += 1
            self._logger.warning(
                "Offerwall postback missing user or transaction id (provider %s)",
                postback.provider,
            )
            return "ignored"
        if postback.reward_amount <= 0:
            self.ignored += 1
            self._logger.warning(
                "Offerwall postback %s/%s carries no reward",
                postback.provider, postback.transaction_id,
            )
            return "ignored"

        now = now or now_utc()
        result = await self._db.award_offer_completion(
            postback.user_id,
            iso_week_str(now),
            postback.provider,
            postback.transaction_id,
            postback.offer_id,
            postback.reward_type,
            postback.reward_amount,
            raw_params={k: v for k, v in params.items() if k != "secret"},
        )
        status = result["status"]
        if status == "awarded":
            self.completions_awarded += 1
            self._logger.info(
                "Offer %s completed by %s: +%d %s (%s)",
                postback.offer_id, postback.user_id, postback.reward_amount,
                postback.reward_type, postback.provider,
            )
        elif status == "duplicate":
            self.duplicates += 1
            self._logger.info(
                "Duplicate offerwall postback %s/%s ignored",
                postback.provider, postback.transaction_id,
            )
        elif status == "unknown_user":
            self.ignored += 1
            self._logger.warning("Offerwall postback for unknown user %s", postback.user_id)
        else:
            self._logger.warning(
                "Offerwall reward type %r recorded without payout", postback.reward_type,
            )
        return status
