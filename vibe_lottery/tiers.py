"""Diminishing-returns ticket accrual.

Daily ad views earn tickets through four bands. Each band converts only the
views that fall inside it, at its own ads-per-ticket ratio:

    views 1–10   → 1 ad per ticket
    views 11–30  → 2 ads per ticket
    views 31–70  → 4 ads per ticket
    views 71+    → 10 ads per ticket

Everything here is pure; the booster scales the payout of a newly earned
ticket elsewhere and never moves a view count between bands.
"""

from __future__ import annotations

from typing import NamedTuple


class TierBand(NamedTuple):
    tier: int
    first_view: int
    last_view: int | None  # None = open-ended
    ads_per_ticket: int


TIER_BANDS: tuple[TierBand, ...] = (
    TierBand(1, 1, 10, 1),
    TierBand(2, 11, 30, 2),
    TierBand(3, 31, 70, 4),
    TierBand(4, 71, None, 10),
)

# Worst-case ratio bounds the lookahead for the next ticket.
MAX_ADS_PER_TICKET = max(b.ads_per_ticket for b in TIER_BANDS)


class TierMeta(NamedTuple):
    current_tier: int
    ads_per_ticket: int
    views_until_next_ticket: int


def tickets_earned(views: int) -> int:
    """Total tickets earned for ``views`` ad views in one day."""
    if views <= 0:
        return 0
    total = 0
    for band in TIER_BANDS:
        if views < band.first_view:
            break
        upper = views if band.last_view is None else min(views, band.last_view)
        total += (upper - band.first_view + 1) // band.ads_per_ticket
    return total


def earns_ticket(view_number: int) -> bool:
    """True when the ``view_number``-th view of the day crosses a ticket boundary."""
    if view_number <= 0:
        return False
    return tickets_earned(view_number - 1) < tickets_earned(view_number)


def band_for(view_number: int) -> TierBand:
    """Band that the ``view_number``-th view falls in (views below 1 → band 1)."""
    for band in TIER_BANDS:
        if band.last_view is None or view_number <= band.last_view:
            return band
    return TIER_BANDS[-1]


def tier_meta(views: int) -> TierMeta:
    """Tier metadata after ``views`` views: the band the next view lands in,
    its ratio, and how many more views until the next ticket."""
    band = band_for(views + 1)
    base = tickets_earned(views)
    until_next = MAX_ADS_PER_TICKET
    for step in range(1, MAX_ADS_PER_TICKET + 1):
        if tickets_earned(views + step) > base:
            until_next = step
            break
    return TierMeta(
        current_tier=band.tier,
        ads_per_ticket=band.ads_per_ticket,
        views_until_next_ticket=until_next,
    )


def quiet_view_count(views: int) -> int:
    """Smallest day count ≥ ``views`` whose view earns no ticket.

    Band 1 pays on every view, so this is at least the first unpaid view of band 2.
    """
    n = max(views, 1)
    while earns_ticket(n):
        n += 1
    return n
