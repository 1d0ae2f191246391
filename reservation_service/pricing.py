from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from .domain import DeliveryTerms, PricingSnapshot, PricingTiers, ZERO
from .errors import PricingError, ValidationError

CENT = Decimal("0.01")

DAY_HOURS = 24
WEEK_HOURS = 7 * 24
MONTH_HOURS = 30 * 24

_HOUR_US = 3_600_000_000


def round_money(value) -> Decimal:
    """2 decimal places, round-half-up (not banker's rounding)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def billable_hours(start: datetime, end: datetime) -> int:
    if end <= start:
        raise ValidationError("end must be after start")
    micros = (end - start) // timedelta(microseconds=1)
    return -(-micros // _HOUR_US)


def base_amount(tiers: PricingTiers, start: datetime, end: datetime) -> Decimal:
    """
    Fixed-order tier selection. The first matching bucket wins, even when a
    later one would be cheaper (e.g. 72h with daily+weekly costs the weekly rate).
    """
    hours = billable_hours(start, end)

    if hours <= DAY_HOURS and tiers.daily is not None:
        return round_money(tiers.daily)
    if hours <= WEEK_HOURS and tiers.weekly is not None:
        return round_money(tiers.weekly)
    if hours <= MONTH_HOURS and tiers.monthly is not None:
        return round_money(tiers.monthly)
    if tiers.hourly is not None:
        return round_money(Decimal(tiers.hourly) * hours)
    if tiers.daily is not None:
        days = -(-hours // DAY_HOURS)
        return round_money(Decimal(tiers.daily) * days)

    raise PricingError(f"No pricing tier applies to a {hours}h reservation")


def price(
    tiers: PricingTiers,
    start: datetime,
    end: datetime,
    *,
    delivery: DeliveryTerms | None = None,
    delivery_requested: bool = False,
    service_fee=ZERO,
    taxes=ZERO,
) -> PricingSnapshot:
    base = base_amount(tiers, start, end)
    deposit = round_money(tiers.deposit or ZERO)

    delivery_fee = ZERO
    if delivery_requested and delivery is not None and delivery.available:
        delivery_fee = round_money(delivery.fee or ZERO)

    service_fee = round_money(service_fee)
    taxes = round_money(taxes)

    return PricingSnapshot(
        base_amount=base,
        deposit=deposit,
        service_fee=service_fee,
        delivery_fee=delivery_fee,
        taxes=taxes,
        total_amount=round_money(base + deposit + service_fee + delivery_fee + taxes),
        currency=tiers.currency,
    )


@dataclass(frozen=True)
class RateFeePolicy:
    """Platform fee schedule: percentages of the base amount."""

    service_fee_rate: Decimal = Decimal("0.10")
    tax_rate: Decimal = ZERO

    @classmethod
    def from_settings(cls, settings) -> "RateFeePolicy":
        return cls(
            service_fee_rate=Decimal(settings.service_fee_rate),
            tax_rate=Decimal(settings.tax_rate),
        )

    def fees(self, base: Decimal) -> tuple[Decimal, Decimal]:
        return round_money(base * self.service_fee_rate), round_money(base * self.tax_rate)


def quote(
    tiers: PricingTiers,
    start: datetime,
    end: datetime,
    fee_policy: RateFeePolicy,
    *,
    delivery: DeliveryTerms | None = None,
    delivery_requested: bool = False,
) -> PricingSnapshot:
    base = base_amount(tiers, start, end)
    service_fee, taxes = fee_policy.fees(base)
    return price(
        tiers,
        start,
        end,
        delivery=delivery,
        delivery_requested=delivery_requested,
        service_fee=service_fee,
        taxes=taxes,
    )
