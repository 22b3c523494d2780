"""
Pure tier qualification: (active tiers, spending snapshot) -> tier.

Tiers are walked in cashback-descending order; the first threshold tier
whose qualifying spend is met wins. Base tiers (``min_spend is None``)
are remembered as the fallback but never stop the walk.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from cashback_engine.models.tier import EvaluationPeriod
from cashback_engine.money import ZERO


@dataclass(frozen=True)
class SpendingSnapshot:
    lifetime_spending: Decimal = ZERO
    trailing_year_spending: Decimal = ZERO

    def for_period(self, evaluation_period: str) -> Decimal:
        if evaluation_period == EvaluationPeriod.LIFETIME.value:
            return self.lifetime_spending
        return self.trailing_year_spending


def tier_sort_key(tier):
    """Comparator for the qualification walk.

    Cashback percent descending. Equal rates are broken by min_spend
    descending (base tiers last), then sort_hint ascending, then id, so the
    walk never depends on row order.
    """
    min_spend = tier.min_spend
    return (
        -Decimal(tier.cashback_percent),
        min_spend is None,
        -(Decimal(min_spend) if min_spend is not None else ZERO),
        tier.sort_hint or 0,
        str(tier.id),
    )


def order_tiers(tiers: Iterable) -> list:
    return sorted(tiers, key=tier_sort_key)


def fallback_tier(tiers: Iterable):
    """Lowest-cashback base tier; without one, the lowest-cashback tier."""
    ordered = order_tiers(tiers)
    if not ordered:
        return None
    base = [t for t in ordered if t.min_spend is None]
    if base:
        return base[-1]
    return ordered[-1]


def resolve_tier(tiers: Sequence, spending: SpendingSnapshot):
    ordered = order_tiers(tiers)
    fallback = None

    for tier in ordered:
        if tier.min_spend is None:
            fallback = tier
            continue

        qualifying_spend = spending.for_period(tier.evaluation_period)
        if qualifying_spend >= Decimal(tier.min_spend):
            return tier

    if fallback is not None:
        return fallback

    # no base tier configured: same rule as initial assignment
    return fallback_tier(ordered)


def qualifying_spend_for(tier, spending: SpendingSnapshot) -> Decimal:
    return spending.for_period(tier.evaluation_period)
