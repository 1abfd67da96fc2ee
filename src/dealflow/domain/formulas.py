"""Underwriting formulas.

All functions are pure and total: missing inputs yield ``None`` rather than an
error, so they can be re-run on every lead mutation.
"""

from __future__ import annotations

REPAIR_RATIO_BANDS = ((0.15, 40), (0.30, 25))
REPAIR_RATIO_FLOOR = 10

MOA_RATIO_BANDS = ((0.55, 40), (0.60, 25))
MOA_RATIO_FLOOR = 10

OFFER_ABOVE_MOA_PENALTY = 20

MIN_SCORE = 0
MAX_SCORE = 100


def calculate_moa(
    arv: float | None,
    investor_multiplier: float,
    estimated_repairs: float | None,
    assignment_fee: float,
) -> float | None:
    """Maximum offer amount: ``arv * multiplier - repairs - fee``.

    A zero ARV or zero repair estimate counts as missing.
    """
    if not arv or not estimated_repairs:
        return None
    return arv * investor_multiplier - estimated_repairs - assignment_fee


def calculate_deal_score(
    arv: float | None,
    estimated_repairs: float | None,
    moa: float | None,
    offer_price: float | None = None,
) -> float | None:
    """Score 0-100 from repair and MOA ratios; zero inputs count as missing."""
    if not arv or not estimated_repairs or not moa:
        return None

    score = _band(estimated_repairs / arv, REPAIR_RATIO_BANDS, REPAIR_RATIO_FLOOR)
    score += _band(moa / arv, MOA_RATIO_BANDS, MOA_RATIO_FLOOR)
    if offer_price and offer_price > moa:
        score -= OFFER_ABOVE_MOA_PENALTY

    return min(MAX_SCORE, max(MIN_SCORE, score))


def offer_spread(offer_price: float | None, moa: float | None) -> float | None:
    if not offer_price or not moa:
        return None
    return moa - offer_price


def meets_profit_threshold(
    moa: float | None, offer_price: float | None, min_profit: float = 5000
) -> bool:
    spread = offer_spread(offer_price, moa)
    if spread is None:
        return False
    return spread >= min_profit


def _band(ratio: float, bands: tuple[tuple[float, int], ...], floor: int) -> int:
    for upper, points in bands:
        if ratio < upper:
            return points
    return floor
