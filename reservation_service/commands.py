from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from .domain import DisputeReason, ReservationStatus, ZERO


@dataclass(frozen=True)
class RequestReservation:
    resource_id: str
    start: datetime
    end: datetime
    delivery_requested: bool = False


@dataclass(frozen=True)
class RejectReservation:
    reason: str | None = None


@dataclass(frozen=True)
class CancelReservation:
    reason: str | None = None


@dataclass(frozen=True)
class RaiseDispute:
    reason: DisputeReason
    description: str | None = None


@dataclass(frozen=True)
class ResolveDispute:
    outcome: ReservationStatus
    refund_amount: Decimal = ZERO
    decision: str | None = None


@dataclass(frozen=True)
class RescheduleReservation:
    start: datetime
    end: datetime
