"""Blackjack hand sessions as a resumable, ledger-persisted state machine.

    none ──deal──▶ in_progress ──hit*──▶ complete ──▶ none
                        └──stand / forfeit──▶ complete

A natural on the deal completes immediately. A hit that busts completes as a
loss. A hit that reaches 21 stays in progress; another hit is still legal.
Stand reveals the hole card and draws the dealer to 17.

The full session (undealt deck included) lives in the ledger, keyed by user,
so a client that disconnects mid-hand resumes through ``state``. The
client-visible view is derived from the persisted session on every read.
The transition functions below are pure; the ledger applies them atomically.
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .casino_engine import GambleOutcome
from .errors import CoreError, from_ledger
from .wagers import coerce_bet, validate_bet

if TYPE_CHECKING:
    from .casino_engine import CasinoStats
    from .config import BlackjackConfig, LotteryConfig
    from .database import LedgerDatabase


RANKS = ("A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K")
SUITS = ("S", "H", "D", "C")

IN_PROGRESS = "in_progress"
COMPLETE = "complete"


# ═══════════════════════════════════════════════════════════════
#  Cards
# ═══════════════════════════════════════════════════════════════

def card(rank: str, suit: str = "S") -> dict:
    return {"rank": rank, "suit": suit}


def new_deck() -> list[dict]:
    deck = [card(r, s) for s in SUITS for r in RANKS]
    random.shuffle(deck)
    return deck


def card_points(c: dict) -> int:
    rank = c["rank"]
    if rank == "A":
        return 11
    if rank in ("J", "Q", "K"):
        return 10
    return int(rank)


def hand_value(cards: list[dict]) -> int:
    """Best total: each ace counts 11 unless that busts the hand, then 1."""
    total = sum(card_points(c) for c in cards)
    aces = sum(1 for c in cards if c["rank"] == "A")
    while total > 21 and aces:
        total -= 10
        aces -= 1
    return total


def is_natural(cards: list[dict]) -> bool:
    return len(cards) == 2 and hand_value(cards) == 21


# ═══════════════════════════════════════════════════════════════
#  Pure transitions
# ═══════════════════════════════════════════════════════════════

def _copy(session: dict) -> dict:
    return {
        **session,
        "player_hand": list(session["player_hand"]),
        "dealer_hand": list(session["dealer_hand"]),
        "deck": list(session["deck"]),
    }


def _finish(session: dict, result: GambleOutcome, payout: int) -> dict:
    session["status"] = COMPLETE
    session["result"] = result.value
    session["payout"] = payout
    return session


def deal_session(bet: int, deck: list[dict], rules: BlackjackConfig, session_id: str) -> dict:
    """Deal player, dealer, player, dealer from the top of ``deck``."""
    deck = list(deck)
    player = [deck.pop(0)]
    dealer = [deck.pop(0)]
    player.append(deck.pop(0))
    dealer.append(deck.pop(0))
    session = {
        "session_id": session_id,
        "bet": bet,
        "player_hand": player,
        "dealer_hand": dealer,
        "deck": deck,
        "status": IN_PROGRESS,
    }
    if is_natural(player):
        return _finish(session, GambleOutcome.BLACKJACK, int(bet * rules.blackjack_payout))
    return session


def hit_session(session: dict) -> dict:
    session = _copy(session)
    session["player_hand"].append(session["deck"].pop(0))
    if hand_value(session["player_hand"]) > 21:
        return _finish(session, GambleOutcome.LOSE, 0)
    return session


def stand_session(session: dict, rules: BlackjackConfig) -> dict:
    session = _copy(session)
    while hand_value(session["dealer_hand"]) < rules.dealer_stands_on:
        session["dealer_hand"].append(session["deck"].pop(0))

    bet = session["bet"]
    player = hand_value(session["player_hand"])
    dealer = hand_value(session["dealer_hand"])
    if dealer > 21 or player > dealer:
        return _finish(session, GambleOutcome.WIN, int(bet * rules.win_payout))
    if player == dealer:
        return _finish(session, GambleOutcome.PUSH, bet)
    return _finish(session, GambleOutcome.LOSE, 0)


def forfeit_session(session: dict) -> dict:
    session = _copy(session)
    session["forfeited"] = True
    return _finish(session, GambleOutcome.LOSE, 0)


# ═══════════════════════════════════════════════════════════════
#  Client views
# ═══════════════════════════════════════════════════════════════


@dataclass
class HandState:
    """Client view of a hand after an action. The hole card is withheld while
    the hand is in progress."""

    session_id: str
    bet: int
    player_hand: list[dict]
    dealer_hand: list[dict]
    dealer_visible: dict
    player_value: int
    dealer_value: int
    status: str
    result: str | None
    payout: int
    net: int
    new_chips: int

    @classmethod
    def from_session(cls, session: dict, new_chips: int) -> HandState:
        revealed = session["status"] == COMPLETE
        dealer = session["dealer_hand"] if revealed else session["dealer_hand"][:1]
        payout = session.get("payout", 0) if revealed else 0
        return cls(
            session_id=session["session_id"],
            bet=session["bet"],
            player_hand=list(session["player_hand"]),
            dealer_hand=list(dealer),
            dealer_visible=session["dealer_hand"][0],
            player_value=hand_value(session["player_hand"]),
            dealer_value=hand_value(dealer),
            status=session["status"],
            result=session.get("result"),
            payout=payout,
            net=payout - session["bet"] if revealed else 0,
            new_chips=new_chips,
        )

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class ForfeitResult:
    session_id: str
    result: str
    bet: int
    payout: int
    net: int
    new_chips: int

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class HandQuery:
    active: bool
    session_id: str | None = None
    bet: int | None = None
    player_hand: list[dict] | None = None
    dealer_visible: dict | None = None
    player_value: int | None = None
    status: str | None = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class BlackjackEngine:
    """Request-driven hand actions; all state is read from the ledger."""

    def __init__(
        self,
        config: LotteryConfig,
        database: LedgerDatabase,
        logger: logging.Logger,
        stats: CasinoStats | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger
        self._stats = stats

    def update_config(self, new_config) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    def _shuffle_deck(self) -> list[dict]:
        return new_deck()

    def _record(self, session: dict) -> None:
        if self._stats is not None and session["status"] == COMPLETE:
            self._stats.record("blackjack", session["bet"], session.get("payout", 0))

    async def deal(self, user_id: str, bet: Any) -> HandState | CoreError:
        error = validate_bet(bet, self._config.wagers.max_bet)
        if error:
            return error

        session = deal_session(
            coerce_bet(bet), self._shuffle_deck(), self._config.blackjack, uuid.uuid4().hex,
        )
        row = await self._db.open_hand(user_id, session, payout=session.get("payout", 0))
        if "error" in row:
            return from_ledger(row)

        if session["status"] == COMPLETE:
            self._logger.info("Blackjack for %s on the deal (bet %d)", user_id, session["bet"])
        self._record(session)
        return HandState.from_session(session, row["new_chips"])

    async def hit(self, user_id: str) -> HandState | CoreError:
        row = await self._db.advance_hand(user_id, hit_session)
        if "error" in row:
            return from_ledger(row)
        self._record(row["session"])
        return HandState.from_session(row["session"], row["new_chips"])

    async def stand(self, user_id: str) -> HandState | CoreError:
        rules = self._config.blackjack
        row = await self._db.advance_hand(user_id, lambda s: stand_session(s, rules))
        if "error" in row:
            return from_ledger(row)
        self._record(row["session"])
        return HandState.from_session(row["session"], row["new_chips"])

    async def forfeit(self, user_id: str) -> ForfeitResult | CoreError:
        row = await self._db.advance_hand(user_id, forfeit_session)
        if "error" in row:
            return from_ledger(row)
        session = row["session"]
        self._record(session)
        return ForfeitResult(
            session_id=session["session_id"],
            result=session["result"],
            bet=session["bet"],
            payout=0,
            net=-session["bet"],
            new_chips=row["new_chips"],
        )

    async def state(self, user_id: str) -> HandQuery:
        """Read-only view of the active hand, for reconnecting clients."""
        session = await self._db.get_hand(user_id)
        if session is None:
            return HandQuery(active=False)
        return HandQuery(
            active=True,
            session_id=session["session_id"],
            bet=session["bet"],
            player_hand=session["player_hand"],
            dealer_visible=session["dealer_hand"][0],
            player_value=hand_value(session["player_hand"]),
            status=session["status"],
        )
