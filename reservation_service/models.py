from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from .db import Base

MONEY = Numeric(12, 2)


class ResourceRow(Base):
    __tablename__ = "resources"

    id = Column(Integer, primary_key=True)
    resource_id = Column(String, unique=True, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)

    hourly_rate = Column(MONEY, nullable=True)
    daily_rate = Column(MONEY, nullable=True)
    weekly_rate = Column(MONEY, nullable=True)
    monthly_rate = Column(MONEY, nullable=True)
    deposit = Column(MONEY, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")

    delivery_available = Column(Boolean, nullable=False, default=False)
    delivery_fee = Column(MONEY, nullable=False, default=0)

    min_rental_hours = Column(Integer, nullable=False, default=1)
    max_rental_hours = Column(Integer, nullable=False, default=720)
    advance_booking_days = Column(Integer, nullable=False, default=30)
    instant_booking = Column(Boolean, nullable=False, default=False)

    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ReservationRow(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    reservation_id = Column(String, unique=True, nullable=False, index=True)
    reference_code = Column(String, unique=True, nullable=False, index=True)

    resource_id = Column(String, ForeignKey("resources.resource_id"), nullable=False, index=True)
    renter_id = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)

    status = Column(String, nullable=False, index=True)  # pending/confirmed/active/completed/cancelled/disputed/expired
    version = Column(Integer, nullable=False, default=1)
    delivery_requested = Column(Boolean, nullable=False, default=False)

    base_amount = Column(MONEY, nullable=False)
    deposit = Column(MONEY, nullable=False)
    service_fee = Column(MONEY, nullable=False)
    delivery_fee = Column(MONEY, nullable=False)
    taxes = Column(MONEY, nullable=False)
    total_amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False)

    payment_ref = Column(String, nullable=True)
    payment_status = Column(String, nullable=False, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    refund_reason = Column(String, nullable=True)
    refund_amount = Column(MONEY, nullable=True)
    refund_service_fee = Column(MONEY, nullable=True)
    refund_percentage = Column(Numeric(5, 2), nullable=True)
    refund_ref = Column(String, nullable=True)
    refund_processed_at = Column(DateTime(timezone=True), nullable=True)

    dispute_reason = Column(String, nullable=True)
    dispute_description = Column(Text, nullable=True)
    disputed_by = Column(String, nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    dispute_previous_status = Column(String, nullable=True)
    dispute_decision = Column(Text, nullable=True)
    dispute_resolved_at = Column(DateTime(timezone=True), nullable=True)

    requested_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_by = Column(String, nullable=True)
    cancellation_reason = Column(String, nullable=True)
