from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from rental_booking.errors import IncompleteRateCard, InvalidPromotion, InvalidWindow
from rental_booking.models import Promotion, RateCard
from rental_booking.pricing import billable_hours, money, price

from conftest import scenario_card

T0 = datetime(2030, 1, 2, 10, 0)
AT = datetime(2030, 1, 1, 8, 0)


def hours(n, minutes=0):
    return T0, T0 + timedelta(hours=n, minutes=minutes)


def promo(kind="PERCENTAGE", value=10, **kwargs):
    return Promotion(code="SUMMER", discount_type=kind, discount_value=Decimal(value), **kwargs)


def test_scenario_a_thirty_hours():
    p = price(scenario_card(), *hours(30))
    assert p.duration_hours == 30
    assert p.quantity("weekly") == 0
    assert p.quantity("daily") == 1
    assert p.quantity("hourly") == 6
    assert p.base_price == 260
    assert p.insurance_amount == 26
    assert p.tax_amount == 23
    assert p.subtotal == 309
    assert p.total_amount == 309
    assert p.deposit_amount == 500
    assert p.pricing_type == "daily"


def test_partial_hour_is_billed_as_full_hour():
    assert billable_hours(*hours(25, minutes=6)) == 26
    p = price(scenario_card(), *hours(25, minutes=6))
    assert p.quantity("daily") == 1
    assert p.quantity("hourly") == 2
    assert p.base_price == 220


def test_weekly_tier_used_when_cheaper_than_days():
    p = price(scenario_card(), *hours(8 * 24))
    assert p.quantity("weekly") == 1
    assert p.quantity("daily") == 1
    assert p.base_price == 1400
    assert p.pricing_type == "weekly"


def test_weekly_tier_skipped_when_not_cheaper():
    p = price(scenario_card(weekly_rate=Decimal(1500)), *hours(8 * 24))
    assert p.quantity("weekly") == 0
    assert p.quantity("daily") == 8
    assert p.base_price == 1600


def test_monthly_tier_then_remainder():
    card = scenario_card(monthly_rate=Decimal(4000))
    p = price(card, *hours(31 * 24))
    assert p.quantity("monthly") == 1
    assert p.quantity("weekly") == 0
    assert p.quantity("daily") == 1
    assert p.base_price == 4200
    assert p.pricing_type == "monthly"


def test_base_price_is_sum_of_tier_costs():
    card = scenario_card(monthly_rate=Decimal(4500), weekly_rate=Decimal("1199.5"))
    for n in range(1, 1000, 7):
        p = price(card, *hours(n))
        assert p.base_price == sum(p.cost(t) for t in ("monthly", "weekly", "daily", "hourly"))
        assert p.subtotal >= 0
        assert p.total_amount == p.subtotal


def test_rounding_is_half_up_at_each_step():
    card = RateCard(hourly_rate=5, daily_rate=100, deposit_amount=0)
    p = price(card, *hours(1))
    assert p.base_price == 5
    # 0.5 → 1 (pas d'arrondi bancaire)
    assert p.insurance_amount == 1
    # (5 + 1) * 0.08 = 0.48 → 0
    assert p.tax_amount == 0
    assert p.subtotal == 6
    assert money(Decimal("2.5")) == 3


def test_insurance_defaults_to_ten_percent():
    p = price(scenario_card(insurance_rate=None), *hours(30))
    assert p.insurance_amount == 26


def test_percentage_promotion_applies_to_base_only():
    p = price(scenario_card(), *hours(30), promotion=promo(value=10), at=AT)
    assert p.discount_amount == 26
    assert p.subtotal == 309 - 26
    assert p.promotion_code == "SUMMER"


def test_percentage_promotion_respects_cap():
    p = price(scenario_card(), *hours(30), promotion=promo(value=50, max_discount_amount=Decimal(100)), at=AT)
    assert p.discount_amount == 100


def test_fixed_promotion_never_goes_below_zero():
    p = price(scenario_card(), *hours(30), promotion=promo("FIXED", 1000), at=AT)
    assert p.discount_amount == 309
    assert p.subtotal == 0


def test_fixed_amount_alias():
    p = price(scenario_card(), *hours(30), promotion=promo("FIXED_AMOUNT", 9), at=AT)
    assert p.discount_amount == 9
    assert p.subtotal == 300


@pytest.mark.parametrize("bad", [
    promo(valid_until=datetime(2029, 12, 31)),
    promo(valid_from=datetime(2030, 2, 1)),
    promo(value=150),
    promo(value=0),
    promo(kind="BOGO"),
])
def test_invalid_promotions(bad):
    with pytest.raises(InvalidPromotion):
        price(scenario_card(), *hours(30), promotion=bad, at=AT)


def test_invalid_window():
    with pytest.raises(InvalidWindow):
        price(scenario_card(), T0, T0)
    with pytest.raises(InvalidWindow):
        price(scenario_card(), T0, T0 - timedelta(hours=1))


def test_incomplete_rate_card():
    with pytest.raises(IncompleteRateCard):
        price(RateCard(hourly_rate=10), *hours(3))
    with pytest.raises(IncompleteRateCard):
        price(RateCard(daily_rate=200), *hours(3))
