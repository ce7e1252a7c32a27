"""Configuration system for vibe-lottery.

All Pydantic models are defined here with defaults matching the live
reward economy. A YAML file only needs to override what differs.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "lottery.db"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    health_path: str = "/health"
    metrics_path: str = "/metrics"


class AuthConfig(BaseModel):
    user_header: str = Field(
        default="X-Authenticated-User",
        description="Header set by the upstream identity proxy",
    )


class OnboardingConfig(BaseModel):
    starting_chips: int = 100
    starting_coins: int = 0


# ═══════════════════════════════════════════════════════════════
#  Ticket earning
# ═══════════════════════════════════════════════════════════════

class TiersConfig(BaseModel):
    day_utc_offset_hours: int = Field(
        default=9, description="Daily view counts reset at midnight in this fixed offset",
    )


class FraudConfig(BaseModel):
    min_seconds_between_views: int = 30


class BoosterConfig(BaseModel):
    duration_hours: int = 24
    ticket_multiplier: float = 1.5
    min_unique_entries: int = 500
    min_recent_entries: int = 500
    recent_window_days: int = 30
    max_evidence_bytes: int = 50 * 1024 * 1024


class PrizePoolConfig(BaseModel):
    base_amount: int = 1_250_000
    increment_per_view: int = 1
    boosted_increment_per_view: int = 2


class AdminConfig(BaseModel):
    api_key: str = Field(default="", description="Bearer key for /api/admin routes; empty disables them")
    revenue_share_percent: int = Field(default=80, description="Share of gross ad revenue added to the pool")


class OfferwallConfig(BaseModel):
    secret: str = Field(default="", description="Shared secret on provider postbacks; empty disables them")
    default_provider: str = "generic"


# ═══════════════════════════════════════════════════════════════
#  Casino
# ═══════════════════════════════════════════════════════════════

class WagersConfig(BaseModel):
    max_bet: int = 500
    max_selections: int = 3


class SpinOutcomeConfig(BaseModel):
    color: str
    multiplier: float
    probability: float


class SpinConfig(BaseModel):
    outcomes: list[SpinOutcomeConfig] = Field(default_factory=lambda: [
        SpinOutcomeConfig(color="black", multiplier=2, probability=0.45),
        SpinOutcomeConfig(color="red", multiplier=3, probability=0.30),
        SpinOutcomeConfig(color="gold", multiplier=10, probability=0.05),
        SpinOutcomeConfig(color="house", multiplier=0, probability=0.20),
    ])
    house_color: str = "house"


class HiLoConfig(BaseModel):
    min_multiplier: float = 1.2
    max_multiplier: float = 12.0


class ScratchPrizeConfig(BaseModel):
    name: str
    chips: int = 0
    coins: int = 0
    probability: float


class ScratchConfig(BaseModel):
    cost: int = 10
    prizes: list[ScratchPrizeConfig] = Field(default_factory=lambda: [
        ScratchPrizeConfig(name="no_prize", probability=0.60),
        ScratchPrizeConfig(name="coins_5", coins=5, probability=0.20),
        ScratchPrizeConfig(name="chips_15", chips=15, probability=0.10),
        ScratchPrizeConfig(name="coins_25", coins=25, probability=0.07),
        ScratchPrizeConfig(name="chips_50", chips=50, probability=0.025),
        ScratchPrizeConfig(name="coins_200", coins=200, probability=0.005),
    ])


class BlackjackConfig(BaseModel):
    dealer_stands_on: int = 17
    blackjack_payout: float = 2.5
    win_payout: float = 2.0


class ConversionConfig(BaseModel):
    cap_percent: int = Field(default=30, description="Converted tickets ≤ this % of organic")
    min_amount: int = 1
    max_amount: int = 1000


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class LotteryConfig(BaseModel):
    """Full service config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    onboarding: OnboardingConfig = Field(default_factory=OnboardingConfig)

    tiers: TiersConfig = Field(default_factory=TiersConfig)
    fraud: FraudConfig = Field(default_factory=FraudConfig)
    booster: BoosterConfig = Field(default_factory=BoosterConfig)
    prize_pool: PrizePoolConfig = Field(default_factory=PrizePoolConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    offerwall: OfferwallConfig = Field(default_factory=OfferwallConfig)

    wagers: WagersConfig = Field(default_factory=WagersConfig)
    spin: SpinConfig = Field(default_factory=SpinConfig)
    hilo: HiLoConfig = Field(default_factory=HiLoConfig)
    scratch: ScratchConfig = Field(default_factory=ScratchConfig)
    blackjack: BlackjackConfig = Field(default_factory=BlackjackConfig)
    conversion: ConversionConfig = Field(default_factory=ConversionConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> LotteryConfig:
    """Load and validate YAML config file into LotteryConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return LotteryConfig(**raw)
