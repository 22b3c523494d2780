import uuid
from decimal import Decimal
from types import SimpleNamespace

import pytest

from cashback_engine.services.tier_resolver import (
    SpendingSnapshot,
    fallback_tier,
    order_tiers,
    qualifying_spend_for,
    resolve_tier,
)


def _tier(name, min_spend, percent, period="ANNUAL", sort_hint=0):
    return SimpleNamespace(
        id=uuid.uuid4(),
        name=name,
        min_spend=Decimal(min_spend) if min_spend is not None else None,
        cashback_percent=Decimal(percent),
        evaluation_period=period,
        sort_hint=sort_hint,
    )


def _spend(annual="0", lifetime=None):
    return SpendingSnapshot(
        lifetime_spending=Decimal(lifetime if lifetime is not None else annual),
        trailing_year_spending=Decimal(annual),
    )


@pytest.fixture
def catalog():
    return [
        _tier("Gold", "500", "5"),
        _tier("Bronze", None, "1"),
        _tier("Platinum", "2000", "8"),
        _tier("Silver", "200", "3"),
    ]


def test_no_spend_resolves_base_tier(catalog):
    assert resolve_tier(catalog, _spend("0")).name == "Bronze"


@pytest.mark.parametrize(
    "annual,expected",
    [("199.99", "Bronze"), ("200", "Silver"), ("499.99", "Silver"), ("500", "Gold"), ("2500", "Platinum")],
)
def test_threshold_boundaries(catalog, annual, expected):
    assert resolve_tier(catalog, _spend(annual)).name == expected


def test_base_tier_does_not_stop_the_walk():
    base_high = _tier("Staff", None, "10")
    vip = _tier("VIP", "100", "12")
    assert resolve_tier([base_high, vip], _spend("150")).name == "VIP"
    assert resolve_tier([base_high, vip], _spend("50")).name == "Staff"


def test_lifetime_tier_uses_lifetime_spending():
    base = _tier("Base", None, "1")
    legacy = _tier("Legacy", "1000", "4", period="LIFETIME")
    annual = _tier("Annual", "1000", "3")
    spending = _spend(annual="100", lifetime="5000")

    assert resolve_tier([base, legacy, annual], spending).name == "Legacy"
    assert qualifying_spend_for(annual, spending) == Decimal("100")


def test_qualification_is_monotonic_in_spend(catalog):
    previous_rate = Decimal("-1")
    for amount in range(0, 3000, 25):
        rate = resolve_tier(catalog, _spend(str(amount))).cashback_percent
        assert rate >= previous_rate
        previous_rate = rate


def test_equal_cashback_prefers_higher_min_spend_then_sort_hint():
    low = _tier("Low", "100", "5")
    high = _tier("High", "300", "5")
    base = _tier("Base", None, "5")

    ordered = order_tiers([base, low, high])
    assert [t.name for t in ordered] == ["High", "Low", "Base"]

    first = _tier("First", "100", "5", sort_hint=1)
    second = _tier("Second", "100", "5", sort_hint=2)
    assert [t.name for t in order_tiers([second, first])] == ["First", "Second"]


def test_resolution_does_not_depend_on_input_order(catalog):
    spending = _spend("650")
    assert resolve_tier(catalog, spending).name == resolve_tier(list(reversed(catalog)), spending).name


def test_fallback_tier_without_base_tier_is_lowest_cashback():
    tiers = [_tier("Gold", "500", "5"), _tier("Silver", "200", "3")]
    assert fallback_tier(tiers).name == "Silver"
    assert resolve_tier(tiers, _spend("10")).name == "Silver"


def test_fallback_tier_empty_catalog():
    assert fallback_tier([]) is None
