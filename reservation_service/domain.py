import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class CancelledBy(str, Enum):
    RENTER = "renter"
    OWNER = "owner"
    SYSTEM = "system"


class DisputeReason(str, Enum):
    DAMAGE = "damage"
    NO_SHOW = "no_show"
    LATE_RETURN = "late_return"
    CONDITION_MISMATCH = "condition_mismatch"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"


# statuses that hold their interval against other bookings
HOLDING_STATUSES = frozenset({ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE})

ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive datetimes are treated as UTC (sqlite drops tzinfo)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_reservation_id() -> str:
    return str(uuid.uuid4())


def new_reference_code(now: datetime) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(5))
    return f"BK{int(now.timestamp() * 1000)}{suffix}"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as asserted by the gateway."""

    user_id: str
    roles: frozenset = frozenset()

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


SYSTEM_ACTOR = Actor(user_id="system", roles=frozenset({"system"}))


@dataclass(frozen=True)
class PricingTiers:
    hourly: Decimal | None = None
    daily: Decimal | None = None
    weekly: Decimal | None = None
    monthly: Decimal | None = None
    deposit: Decimal = ZERO
    currency: str = "USD"


@dataclass(frozen=True)
class DeliveryTerms:
    available: bool = False
    fee: Decimal = ZERO


@dataclass(frozen=True)
class Resource:
    resource_id: str
    owner_id: str
    pricing: PricingTiers
    delivery: DeliveryTerms = field(default_factory=DeliveryTerms)
    min_rental_hours: int = 1
    max_rental_hours: int = 720
    advance_booking_days: int = 30
    instant_booking: bool = False
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class PricingSnapshot:
    base_amount: Decimal
    deposit: Decimal
    service_fee: Decimal
    delivery_fee: Decimal
    taxes: Decimal
    total_amount: Decimal
    currency: str


@dataclass(frozen=True)
class PaymentInfo:
    payment_ref: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: datetime | None = None


@dataclass(frozen=True)
class RefundRecord:
    reason: str
    amount: Decimal
    service_fee_refund: Decimal
    percentage: Decimal
    refund_ref: str | None
    processed_at: datetime


@dataclass(frozen=True)
class DisputeRecord:
    reason: DisputeReason
    description: str | None
    raised_by: str
    raised_at: datetime
    previous_status: ReservationStatus
    decision: str | None = None
    resolved_at: datetime | None = None


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    reference_code: str
    resource_id: str
    renter_id: str
    owner_id: str
    start: datetime
    end: datetime
    status: ReservationStatus
    pricing: PricingSnapshot
    requested_at: datetime
    delivery_requested: bool = False
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    refund: RefundRecord | None = None
    dispute: DisputeRecord | None = None
    confirmed_at: datetime | None = None
    activated_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    expired_at: datetime | None = None
    cancelled_by: CancelledBy | None = None
    cancellation_reason: str | None = None
    version: int = 1

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.renter_id, self.owner_id)
