"""Service orchestrator — LotteryApp.

config → ledger init → engines → HTTP routes → serve.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from aiohttp import web

from . import __version__
from .ad_rewards import AdRewardService
from .api import IdentityProvider, LotteryApi, TrustedHeaderIdentity, error_middleware
from .blackjack import BlackjackEngine
from .booster import BoosterManager, PaymentGateway
from .casino_engine import CasinoEngine
from .config import LotteryConfig, load_config
from .conversion import ConversionCapTracker
from .database import LedgerDatabase
from .fraud_gate import FraudGate
from .metrics_server import LotteryMetricsServer
from .offerwall import OfferwallService

BODY_HEADROOM_BYTES = 1024 * 1024


class LotteryApp:
    """Top-level application orchestrator."""

    def __init__(
        self,
        config_path: str | None = None,
        config: LotteryConfig | None = None,
        identity: IdentityProvider | None = None,
        payment_gateway: PaymentGateway | None = None,
    ) -> None:
        self.config_path = Path(config_path) if config_path else None
        self.logger = logging.getLogger("lottery")
        self._identity = identity
        self._payment_gateway = payment_gateway

        # Components (initialized in setup())
        self.config: LotteryConfig | None = config
        self.db: LedgerDatabase | None = None
        self.fraud_gate: FraudGate | None = None
        self.booster: BoosterManager | None = None
        self.ad_rewards: AdRewardService | None = None
        self.casino: CasinoEngine | None = None
        self.blackjack: BlackjackEngine | None = None
        self.conversion: ConversionCapTracker | None = None
        self.offerwall: OfferwallService | None = None
        self.metrics_server: LotteryMetricsServer | None = None
        self.web_app: web.Application | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._runner: web.AppRunner | None = None

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def setup(self) -> web.Application:
        """Build every component and the aiohttp application (without serving)."""
        if self.config is None:
            if self.config_path is None:
                raise ValueError("LotteryApp needs a config or a config_path")
            self.config = load_config(str(self.config_path))
        cfg = self.config
        self.logger.info("vibe-lottery v%s starting", __version__)

        self.db = LedgerDatabase(
            cfg.database.path,
            self.logger,
            starting_chips=cfg.onboarding.starting_chips,
            starting_coins=cfg.onboarding.starting_coins,
        )
        await self.db.initialize()
        self.logger.info("Ledger initialized at %s", cfg.database.path)

        self.fraud_gate = FraudGate(cfg, self.db, self.logger)
        self.booster = BoosterManager(cfg, self.db, self.logger, self._payment_gateway)
        self.ad_rewards = AdRewardService(cfg, self.db, self.fraud_gate, self.booster, self.logger)
        self.casino = CasinoEngine(cfg, self.db, self.logger)
        self.blackjack = BlackjackEngine(cfg, self.db, self.logger, stats=self.casino.stats)
        self.conversion = ConversionCapTracker(cfg, self.db, self.logger)
        self.offerwall = OfferwallService(cfg, self.db, self.logger)

        # Bodies up to the evidence limit must reach the booster handler.
        self.web_app = web.Application(
            middlewares=[error_middleware],
            client_max_size=cfg.booster.max_evidence_bytes + BODY_HEADROOM_BYTES,
        )
        identity = self._identity or TrustedHeaderIdentity(cfg.auth.user_header)
        LotteryApi(self, identity).register(self.web_app)
        self.metrics_server = LotteryMetricsServer(self)
        self.metrics_server.register(self.web_app)

        self._start_time = time.time()
        return self.web_app

    # ══════════════════════════════════════════════════════════
    #  Config Hot-Reload
    # ══════════════════════════════════════════════════════════

    def reload_config(self) -> LotteryConfig:
        """Re-read config_path, validate it, and push it into every engine.

        Raises on a missing path or invalid YAML; the running config is then
        left untouched.
        """
        if self.config_path is None:
            raise RuntimeError("No config_path set for hot-reload.")
        new_config = load_config(str(self.config_path))
        self._apply_config(new_config)
        return new_config

    def _apply_config(self, new_config: LotteryConfig) -> None:
        old_config = self.config
        self.config = new_config

        for component in (
            self.fraud_gate, self.booster, self.ad_rewards,
            self.casino, self.blackjack, self.conversion, self.offerwall,
        ):
            if component is not None:
                component.update_config(new_config)

        # Bound at setup; a change needs a restart.
        if old_config is not None:
            if new_config.database.path != old_config.database.path:
                self.logger.warning("database.path changed; restart to switch ledgers")
            if new_config.server != old_config.server or new_config.auth != old_config.auth:
                self.logger.warning("server/auth settings changed; restart to apply")
            if new_config.booster.max_evidence_bytes > old_config.booster.max_evidence_bytes:
                self.logger.warning("Raised evidence limit is capped by the request size set at startup")
        self.logger.info("Config reloaded from %s", self.config_path)

    async def start(self) -> None:
        """Set up, serve HTTP, and block until stop() is called."""
        await self.setup()
        cfg = self.config.server

        self._runner = web.AppRunner(self.web_app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, cfg.host, cfg.port)
        await site.start()
        self.logger.info("Listening on %s:%d", cfg.host, cfg.port)

        self._running = True
        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Graceful shutdown."""
        if not self._running and self._runner is None:
            return
        self._running = False
        self.logger.info("Shutting down vibe-lottery")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
