from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .domain import DisputeReason, PricingSnapshot, Reservation


class PricingTiersIn(BaseModel):
    hourly: Optional[Decimal] = Field(default=None, ge=0)
    daily: Optional[Decimal] = Field(default=None, ge=0)
    weekly: Optional[Decimal] = Field(default=None, ge=0)
    monthly: Optional[Decimal] = Field(default=None, ge=0)
    deposit: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"


class DeliveryTermsIn(BaseModel):
    available: bool = False
    fee: Decimal = Field(default=Decimal("0"), ge=0)


class UpsertResource(BaseModel):
    owner_id: str
    pricing: PricingTiersIn
    delivery: DeliveryTermsIn = Field(default_factory=DeliveryTermsIn)
    min_rental_hours: int = Field(default=1, ge=0)
    max_rental_hours: int = Field(default=720, ge=1)
    advance_booking_days: int = Field(default=30, ge=0)
    instant_booking: bool = False
    deleted_at: Optional[datetime] = None


class CreateReservationRequest(BaseModel):
    resource_id: str
    start: datetime
    end: datetime
    delivery_requested: bool = False


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    reason: DisputeReason
    description: Optional[str] = Field(default=None, max_length=1000)


class ResolveDisputeRequest(BaseModel):
    outcome: Literal["completed", "cancelled"]
    refund_amount: Decimal = Field(default=Decimal("0"), ge=0)
    decision: Optional[str] = None


class IntervalRequest(BaseModel):
    start: datetime
    end: datetime


class AvailabilityRequest(IntervalRequest):
    exclude_reservation_id: Optional[str] = None


class QuoteRequest(IntervalRequest):
    delivery_requested: bool = False


class PricingResponse(BaseModel):
    base_amount: Decimal
    deposit: Decimal
    service_fee: Decimal
    delivery_fee: Decimal
    taxes: Decimal
    total_amount: Decimal
    currency: str

    @classmethod
    def from_domain(cls, p: PricingSnapshot) -> "PricingResponse":
        return cls(
            base_amount=p.base_amount,
            deposit=p.deposit,
            service_fee=p.service_fee,
            delivery_fee=p.delivery_fee,
            taxes=p.taxes,
            total_amount=p.total_amount,
            currency=p.currency,
        )


class RefundResponse(BaseModel):
    reason: str
    amount: Decimal
    service_fee_refund: Decimal
    percentage: Decimal
    refund_ref: Optional[str] = None
    processed_at: datetime


class DisputeResponse(BaseModel):
    reason: str
    description: Optional[str] = None
    raised_by: str
    raised_at: datetime
    decision: Optional[str] = None
    resolved_at: Optional[datetime] = None


class ReservationResponse(BaseModel):
    reservation_id: str
    reference_code: str
    resource_id: str
    renter_id: str
    owner_id: str
    start: datetime
    end: datetime
    status: str
    pricing: PricingResponse
    payment_status: str
    payment_ref: Optional[str] = None
    refund: Optional[RefundResponse] = None
    dispute: Optional[DisputeResponse] = None
    requested_at: datetime
    confirmed_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    version: int

    @classmethod
    def from_domain(cls, r: Reservation) -> "ReservationResponse":
        refund = None
        if r.refund:
            refund = RefundResponse(
                reason=r.refund.reason,
                amount=r.refund.amount,
                service_fee_refund=r.refund.service_fee_refund,
                percentage=r.refund.percentage,
                refund_ref=r.refund.refund_ref,
                processed_at=r.refund.processed_at,
            )
        dispute = None
        if r.dispute:
            dispute = DisputeResponse(
                reason=r.dispute.reason.value,
                description=r.dispute.description,
                raised_by=r.dispute.raised_by,
                raised_at=r.dispute.raised_at,
                decision=r.dispute.decision,
                resolved_at=r.dispute.resolved_at,
            )
        return cls(
            reservation_id=r.reservation_id,
            reference_code=r.reference_code,
            resource_id=r.resource_id,
            renter_id=r.renter_id,
            owner_id=r.owner_id,
            start=r.start,
            end=r.end,
            status=r.status.value,
            pricing=PricingResponse.from_domain(r.pricing),
            payment_status=r.payment.status.value,
            payment_ref=r.payment.payment_ref,
            refund=refund,
            dispute=dispute,
            requested_at=r.requested_at,
            confirmed_at=r.confirmed_at,
            activated_at=r.activated_at,
            cancelled_at=r.cancelled_at,
            completed_at=r.completed_at,
            expired_at=r.expired_at,
            cancelled_by=r.cancelled_by.value if r.cancelled_by else None,
            cancellation_reason=r.cancellation_reason,
            version=r.version,
        )


class ConflictResponse(BaseModel):
    reservation_id: str
    start: datetime
    end: datetime
    status: str


class AvailabilityResponse(BaseModel):
    available: bool
    conflicts: List[ConflictResponse]
