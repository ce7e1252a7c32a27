"""Shared bet-shape validation for every chip wager.

Shape is always checked before funds; the funds check itself happens inside
the ledger's atomic settlement.
"""

from __future__ import annotations

from typing import Any, Iterable, NamedTuple

from .errors import CoreError, core_error


class Selection(NamedTuple):
    """One category on a multi-selection wager, e.g. a wheel color."""

    category: str
    bet: int


def coerce_bet(value: Any) -> int | None:
    """Return ``value`` as an int if it is a whole number, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def validate_bet(bet: Any, max_bet: int) -> CoreError | None:
    """Returns a CoreError, or None if the bet is a positive integer ≤ max_bet."""
    amount = coerce_bet(bet)
    if amount is None or amount <= 0:
        return core_error("invalid_bet", "Invalid bet. Must be a positive integer.")
    if amount > max_bet:
        return core_error("bet_too_high", f"Maximum bet is {max_bet} chips.", max=max_bet)
    return None


def validate_selections(
    selections: Any,
    allowed: Iterable[str],
    max_bet: int,
    max_selections: int,
    category_key: str = "color",
) -> list[Selection] | CoreError:
    """Validate 1..max_selections ``{category_key, bet}`` entries with no repeats."""
    if not isinstance(selections, list) or not 1 <= len(selections) <= max_selections:
        return core_error(
            "invalid_bets",
            f"Between 1 and {max_selections} bets are required.",
        )

    allowed_set = set(allowed)
    seen: set[str] = set()
    parsed: list[Selection] = []
    for entry in selections:
        if not isinstance(entry, dict):
            return core_error("invalid_bets", "Each bet must be an object.")
        category = entry.get(category_key)
        if not isinstance(category, str) or category not in allowed_set:
            return core_error(
                "invalid_color",
                f"{category_key.capitalize()} must be one of: {', '.join(sorted(allowed_set))}.",
            )
        if category in seen:
            return core_error(
                "invalid_bets",
                f"Duplicate {category_key}: {category}. One bet per {category_key}.",
            )
        seen.add(category)

        error = validate_bet(entry.get("bet"), max_bet)
        if error:
            return error
        parsed.append(Selection(category, coerce_bet(entry.get("bet"))))
    return parsed
