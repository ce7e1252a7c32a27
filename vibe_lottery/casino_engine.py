"""Casino engine — color wheel, hi-lo and scratch card settlement.

Every game validates shape first, draws its outcome, then settles stake and
payout in one ledger call. A rejected game leaves balances untouched.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import CoreError, core_error, from_ledger
from .wagers import coerce_bet, validate_bet, validate_selections

if TYPE_CHECKING:
    from .config import LotteryConfig
    from .database import LedgerDatabase


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


class GambleOutcome(Enum):
    WIN = "win"
    LOSE = "lose"
    PUSH = "push"
    BLACKJACK = "blackjack"


@dataclass
class PayoutEntry:
    key: str
    multiplier: float
    cumulative_probability: float
    chips: int = 0
    coins: int = 0


@dataclass
class SpinBetResult:
    color: str
    bet: int
    won: bool
    multiplier: float
    payout: int
    net: int


@dataclass
class SpinSettlement:
    result_color: str
    bets: list[SpinBetResult]
    total_bet: int
    total_payout: int
    net: int
    any_won: bool
    new_chips: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HiLoSettlement:
    outcome: GambleOutcome
    card: int
    drawn_card: int
    guess: str
    bet: int
    multiplier: float
    payout: int
    net: int
    new_chips: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


@dataclass
class ScratchSettlement:
    outcome: str
    cost: int
    reward_chips: int
    reward_coins: int
    new_chips: int
    new_coins: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CasinoStats:
    """Process-lifetime counters exposed on /metrics."""

    wagers_settled: int = 0
    chips_wagered: int = 0
    chips_paid_out: int = 0
    by_game: dict[str, int] = field(default_factory=dict)

    def record(self, game: str, stake: int, payout: int) -> None:
        self.wagers_settled += 1
        self.chips_wagered += stake
        self.chips_paid_out += payout
        self.by_game[game] = self.by_game.get(game, 0) + 1


# ═══════════════════════════════════════════════════════════════
#  Hi-lo odds
# ═══════════════════════════════════════════════════════════════

RANK_COUNT = 13
GUESSES = ("higher", "lower")


def favorable_count(first_rank: int, guess: str) -> int:
    """Ranks that beat ``first_rank`` for the guess (ties excluded)."""
    if guess == "higher":
        return RANK_COUNT - first_rank
    return first_rank - 1


def hilo_multiplier(first_rank: int, guess: str, low: float, high: float) -> float:
    """Payout multiplier inversely proportional to the guess's odds, clamped.

    No favorable rank means the guess cannot win; the clamp ceiling is
    reported without dividing by zero.
    """
    favorable = favorable_count(first_rank, guess)
    if favorable <= 0:
        return high
    return round(min(high, max(low, RANK_COUNT / favorable)), 2)


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class CasinoEngine:
    """Settles the single-step chip games."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self.stats = CasinoStats()

        self._spin_table = self._build_payout_table(
            [(o.color, o.multiplier, o.probability, 0, 0) for o in config.spin.outcomes],
            "Spin",
        )
        self._scratch_table = self._build_payout_table(
            [(p.name, 0.0, p.probability, p.chips, p.coins) for p in config.scratch.prizes],
            "Scratch",
        )

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference. Rebuild payout tables."""
        self._config = new_config
        self._spin_table = self._build_payout_table(
            [(o.color, o.multiplier, o.probability, 0, 0) for o in new_config.spin.outcomes],
            "Spin",
        )
        self._scratch_table = self._build_payout_table(
            [(p.name, 0.0, p.probability, p.chips, p.coins) for p in new_config.scratch.prizes],
            "Scratch",
        )

    # ══════════════════════════════════════════════════════════
    #  Payout tables
    # ══════════════════════════════════════════════════════════

    def _build_payout_table(
        self, rows: list[tuple[str, float, float, int, int]], label: str,
    ) -> list[PayoutEntry]:
        """Build cumulative probability table from config."""
        table: list[PayoutEntry] = []
        cumulative = 0.0
        for key, multiplier, probability, chips, coins in rows:
            cumulative += probability
            table.append(PayoutEntry(
                key=key,
                multiplier=multiplier,
                cumulative_probability=cumulative,
                chips=chips,
                coins=coins,
            ))
        if abs(cumulative - 1.0) > 0.01:
            self._logger.warning(
                "%s probabilities sum to %.4f (expected 1.0)", label, cumulative,
            )
        return table

    @staticmethod
    def _resolve(table: list[PayoutEntry], roll: float) -> PayoutEntry:
        """Resolve a random roll in [0, 1) to a table entry."""
        for entry in table:
            if roll < entry.cumulative_probability:
                return entry
        return table[-1]

    @property
    def spin_colors(self) -> list[str]:
        return [e.key for e in self._spin_table if e.key != self._config.spin.house_color]

    # ══════════════════════════════════════════════════════════
    #  Color wheel
    # ══════════════════════════════════════════════════════════

    async def spin(self, user_id: str, bets: Any) -> SpinSettlement | CoreError:
        """Settle 1–3 color bets against one draw of the wheel."""
        wagers = self._config.wagers
        selections = validate_selections(
            bets, self.spin_colors, wagers.max_bet, wagers.max_selections,
        )
        if isinstance(selections, CoreError):
            return selections

        landed = self._resolve(self._spin_table, random.random())
        multipliers = {e.key: e.multiplier for e in self._spin_table}

        results: list[SpinBetResult] = []
        for sel in selections:
            won = sel.category == landed.key
            multiplier = multipliers[sel.category] if won else 0.0
            payout = int(sel.bet * multiplier)
            results.append(SpinBetResult(
                color=sel.category, bet=sel.bet, won=won,
                multiplier=multiplier, payout=payout, net=payout - sel.bet,
            ))

        total_bet = sum(r.bet for r in results)
        total_payout = sum(r.payout for r in results)

        row = await self._db.settle_wager(
            user_id, total_bet, total_payout,
            tx_type="spin",
            reason=f"Spin: {landed.key}",
            metadata=json.dumps({"bets": {r.color: r.bet for r in results}}),
        )
        if "error" in row:
            return from_ledger(row)

        self.stats.record("spin", total_bet, total_payout)
        return SpinSettlement(
            result_color=landed.key,
            bets=results,
            total_bet=total_bet,
            total_payout=total_payout,
            net=total_payout - total_bet,
            any_won=any(r.won for r in results),
            new_chips=row["new_chips"],
        )

    # ══════════════════════════════════════════════════════════
    #  Hi-lo
    # ══════════════════════════════════════════════════════════

    async def hilo(self, user_id: str, bet: Any, guess: Any) -> HiLoSettlement | CoreError:
        """Draw a card, take the guess, draw again and settle."""
        error = validate_bet(bet, self._config.wagers.max_bet)
        if error:
            return error
        if guess not in GUESSES:
            return core_error("invalid_guess", 'Guess must be "higher" or "lower".')
        bet = coerce_bet(bet)

        cfg = self._config.hilo
        card = random.randint(1, RANK_COUNT)
        drawn = random.randint(1, RANK_COUNT)
        multiplier = hilo_multiplier(card, guess, cfg.min_multiplier, cfg.max_multiplier)

        if drawn == card:
            outcome = GambleOutcome.PUSH
            payout = bet
        elif (drawn > card) == (guess == "higher"):
            outcome = GambleOutcome.WIN
            payout = int(bet * multiplier)
        else:
            outcome = GambleOutcome.LOSE
            payout = 0

        row = await self._db.settle_wager(
            user_id, bet, payout,
            tx_type="hilo",
            reason=f"Hi-lo: {card} → {drawn} ({guess})",
            metadata=json.dumps({"multiplier": multiplier}),
        )
        if "error" in row:
            return from_ledger(row)

        self.stats.record("hilo", bet, payout)
        return HiLoSettlement(
            outcome=outcome, card=card, drawn_card=drawn, guess=guess,
            bet=bet, multiplier=multiplier, payout=payout, net=payout - bet,
            new_chips=row["new_chips"],
        )

    # ══════════════════════════════════════════════════════════
    #  Scratch card
    # ══════════════════════════════════════════════════════════

    async def scratch(self, user_id: str) -> ScratchSettlement | CoreError:
        """Buy one fixed-price card and credit its prize."""
        cost = self._config.scratch.cost
        prize = self._resolve(self._scratch_table, random.random())

        row = await self._db.settle_wager(
            user_id, cost, prize.chips, prize.coins,
            tx_type="scratch",
            reason=f"Scratch: {prize.key}",
        )
        if "error" in row:
            return from_ledger(row)

        self.stats.record("scratch", cost, prize.chips)
        return ScratchSettlement(
            outcome=prize.key,
            cost=cost,
            reward_chips=prize.chips,
            reward_coins=prize.coins,
            new_chips=row["new_chips"],
            new_coins=row["new_coins"],
        )
