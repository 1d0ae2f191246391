"""Cancellation refund policy.

- Owner (or system) cancellation: 100%
- Renter cancellation:
    - 48h or more before start: 90%
    - 24h to 48h before start: 50%
    - under 24h: nothing

The service fee is refunded whole whenever any refund is due, never pro-rated.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .domain import CancelledBy, Reservation, ZERO
from .pricing import round_money

FULL_REFUND_HOURS = 48
PARTIAL_REFUND_HOURS = 24

OWNER_PERCENT = Decimal("1.00")
EARLY_RENTER_PERCENT = Decimal("0.90")
LATE_RENTER_PERCENT = Decimal("0.50")
NO_REFUND_PERCENT = Decimal("0.00")


@dataclass(frozen=True)
class RefundQuote:
    refund_percentage: Decimal
    refund_amount: Decimal
    service_fee_refund: Decimal
    hours_until_start: float
    policy_basis: str


def refund_percentage(cancelled_by: CancelledBy, hours_until_start: float) -> tuple[Decimal, str]:
    if cancelled_by in (CancelledBy.OWNER, CancelledBy.SYSTEM):
        return OWNER_PERCENT, f"{cancelled_by.value} cancellation: full refund"

    if hours_until_start >= FULL_REFUND_HOURS:
        return EARLY_RENTER_PERCENT, ">=48 hours before start: 90% refund"
    if hours_until_start >= PARTIAL_REFUND_HOURS:
        return LATE_RENTER_PERCENT, "24-48 hours before start: 50% refund"
    return NO_REFUND_PERCENT, "<24 hours before start: no refund"


def compute_refund(reservation: Reservation, cancelled_by: CancelledBy, now: datetime) -> RefundQuote:
    hours_until_start = (reservation.start - now).total_seconds() / 3600
    pct, basis = refund_percentage(cancelled_by, hours_until_start)

    return RefundQuote(
        refund_percentage=pct,
        refund_amount=round_money(reservation.pricing.total_amount * pct),
        service_fee_refund=reservation.pricing.service_fee if pct > 0 else ZERO,
        hours_until_start=hours_until_start,
        policy_basis=basis,
    )
