from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import DAY1, at
from reservation_service.domain import DeliveryTerms, PricingTiers
from reservation_service.errors import PricingError, ValidationError
from reservation_service.pricing import (
    RateFeePolicy,
    base_amount,
    billable_hours,
    price,
    quote,
    round_money,
)


def test_round_money_is_half_up():
    assert round_money(Decimal("2.345")) == Decimal("2.35")
    assert round_money(Decimal("2.335")) == Decimal("2.34")
    assert round_money("10") == Decimal("10.00")


def test_billable_hours_rounds_partial_hours_up():
    start = at(DAY1, 9)
    assert billable_hours(start, start + timedelta(hours=2)) == 2
    assert billable_hours(start, start + timedelta(hours=2, minutes=1)) == 3
    assert billable_hours(start, start + timedelta(seconds=1)) == 1


def test_billable_hours_rejects_empty_interval():
    with pytest.raises(ValidationError):
        billable_hours(at(DAY1, 9), at(DAY1, 9))


def test_three_days_with_daily_and_weekly_costs_the_weekly_rate():
    tiers = PricingTiers(daily=Decimal("50"), weekly=Decimal("300"))
    start = at(DAY1, 0)
    assert base_amount(tiers, start, start + timedelta(days=3)) == Decimal("300.00")


def test_up_to_a_day_uses_daily_rate():
    tiers = PricingTiers(hourly=Decimal("10"), daily=Decimal("50"))
    assert base_amount(tiers, at(DAY1, 9), at(DAY1, 11)) == Decimal("50.00")
    assert base_amount(tiers, at(DAY1, 0), at(DAY1, 24)) == Decimal("50.00")


def test_monthly_rate_covers_up_to_thirty_days():
    tiers = PricingTiers(hourly=Decimal("1"), monthly=Decimal("900"))
    start = at(DAY1, 0)
    assert base_amount(tiers, start, start + timedelta(days=10)) == Decimal("900.00")


def test_hourly_fallback_multiplies_billable_hours():
    tiers = PricingTiers(hourly=Decimal("12.50"))
    assert base_amount(tiers, at(DAY1, 9), at(DAY1, 12)) == Decimal("37.50")


def test_daily_fallback_beyond_a_month_rounds_days_up():
    tiers = PricingTiers(daily=Decimal("40"))
    start = at(DAY1, 0)
    # 31 days + 1 hour bills 32 days
    assert base_amount(tiers, start, start + timedelta(days=31, hours=1)) == Decimal("1280.00")


def test_no_applicable_tier_is_a_pricing_error():
    tiers = PricingTiers(weekly=Decimal("300"))
    start = at(DAY1, 0)
    with pytest.raises(PricingError):
        base_amount(tiers, start, start + timedelta(days=8))

    with pytest.raises(PricingError):
        base_amount(PricingTiers(), at(DAY1, 9), at(DAY1, 10))


def test_price_adds_deposit_fees_and_delivery():
    tiers = PricingTiers(daily=Decimal("50"), deposit=Decimal("100"), currency="EUR")
    snapshot = price(
        tiers,
        at(DAY1, 9),
        at(DAY1, 17),
        delivery=DeliveryTerms(available=True, fee=Decimal("15")),
        delivery_requested=True,
        service_fee=Decimal("5"),
        taxes=Decimal("2.5"),
    )
    assert snapshot.base_amount == Decimal("50.00")
    assert snapshot.deposit == Decimal("100.00")
    assert snapshot.delivery_fee == Decimal("15.00")
    assert snapshot.taxes == Decimal("2.50")
    assert snapshot.total_amount == Decimal("172.50")
    assert snapshot.currency == "EUR"


def test_delivery_fee_only_when_requested_and_offered():
    tiers = PricingTiers(daily=Decimal("50"))
    not_offered = DeliveryTerms(available=False, fee=Decimal("15"))
    offered = DeliveryTerms(available=True, fee=Decimal("15"))

    assert price(tiers, at(DAY1, 9), at(DAY1, 17), delivery=not_offered, delivery_requested=True).delivery_fee == 0
    assert price(tiers, at(DAY1, 9), at(DAY1, 17), delivery=offered, delivery_requested=False).delivery_fee == 0


def test_quote_applies_fee_policy_to_base_amount():
    tiers = PricingTiers(daily=Decimal("50"))
    policy = RateFeePolicy(service_fee_rate=Decimal("0.10"), tax_rate=Decimal("0.08"))
    snapshot = quote(tiers, at(DAY1, 9), at(DAY1, 17), policy)

    assert snapshot.service_fee == Decimal("5.00")
    assert snapshot.taxes == Decimal("4.00")
    assert snapshot.total_amount == Decimal("59.00")
