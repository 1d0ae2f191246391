import dataclasses
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, or_, select, update

from .domain import (
    CancelledBy,
    DeliveryTerms,
    DisputeReason,
    DisputeRecord,
    PaymentInfo,
    PaymentStatus,
    PricingSnapshot,
    PricingTiers,
    RefundRecord,
    Reservation,
    ReservationStatus,
    Resource,
    as_utc,
)
from .errors import ConflictError, NotFoundError, StaleStateError
from .models import ReservationRow, ResourceRow
from .store import ReservationStore


def _utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _dec(value) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def resource_to_domain(row: ResourceRow) -> Resource:
    return Resource(
        resource_id=row.resource_id,
        owner_id=row.owner_id,
        pricing=PricingTiers(
            hourly=_dec(row.hourly_rate),
            daily=_dec(row.daily_rate),
            weekly=_dec(row.weekly_rate),
            monthly=_dec(row.monthly_rate),
            deposit=_dec(row.deposit) or Decimal("0.00"),
            currency=row.currency,
        ),
        delivery=DeliveryTerms(
            available=bool(row.delivery_available),
            fee=_dec(row.delivery_fee) or Decimal("0.00"),
        ),
        min_rental_hours=row.min_rental_hours,
        max_rental_hours=row.max_rental_hours,
        advance_booking_days=row.advance_booking_days,
        instant_booking=bool(row.instant_booking),
        deleted_at=_utc(row.deleted_at),
    )


def resource_values(resource: Resource) -> dict:
    return {
        "resource_id": resource.resource_id,
        "owner_id": resource.owner_id,
        "hourly_rate": resource.pricing.hourly,
        "daily_rate": resource.pricing.daily,
        "weekly_rate": resource.pricing.weekly,
        "monthly_rate": resource.pricing.monthly,
        "deposit": resource.pricing.deposit,
        "currency": resource.pricing.currency,
        "delivery_available": resource.delivery.available,
        "delivery_fee": resource.delivery.fee,
        "min_rental_hours": resource.min_rental_hours,
        "max_rental_hours": resource.max_rental_hours,
        "advance_booking_days": resource.advance_booking_days,
        "instant_booking": resource.instant_booking,
        "deleted_at": _utc(resource.deleted_at),
    }


def reservation_to_domain(row: ReservationRow) -> Reservation:
    refund = None
    if row.refund_processed_at is not None:
        refund = RefundRecord(
            reason=row.refund_reason or "",
            amount=_dec(row.refund_amount),
            service_fee_refund=_dec(row.refund_service_fee) or Decimal("0.00"),
            percentage=_dec(row.refund_percentage) or Decimal("0.00"),
            refund_ref=row.refund_ref,
            processed_at=_utc(row.refund_processed_at),
        )

    dispute = None
    if row.disputed_at is not None:
        dispute = DisputeRecord(
            reason=DisputeReason(row.dispute_reason),
            description=row.dispute_description,
            raised_by=row.disputed_by,
            raised_at=_utc(row.disputed_at),
            previous_status=ReservationStatus(row.dispute_previous_status),
            decision=row.dispute_decision,
            resolved_at=_utc(row.dispute_resolved_at),
        )

    return Reservation(
        reservation_id=row.reservation_id,
        reference_code=row.reference_code,
        resource_id=row.resource_id,
        renter_id=row.renter_id,
        owner_id=row.owner_id,
        start=_utc(row.start_at),
        end=_utc(row.end_at),
        status=ReservationStatus(row.status),
        pricing=PricingSnapshot(
            base_amount=_dec(row.base_amount),
            deposit=_dec(row.deposit),
            service_fee=_dec(row.service_fee),
            delivery_fee=_dec(row.delivery_fee),
            taxes=_dec(row.taxes),
            total_amount=_dec(row.total_amount),
            currency=row.currency,
        ),
        requested_at=_utc(row.requested_at),
        delivery_requested=bool(row.delivery_requested),
        payment=PaymentInfo(
            payment_ref=row.payment_ref,
            status=PaymentStatus(row.payment_status),
            paid_at=_utc(row.paid_at),
        ),
        refund=refund,
        dispute=dispute,
        confirmed_at=_utc(row.confirmed_at),
        activated_at=_utc(row.activated_at),
        cancelled_at=_utc(row.cancelled_at),
        completed_at=_utc(row.completed_at),
        expired_at=_utc(row.expired_at),
        cancelled_by=CancelledBy(row.cancelled_by) if row.cancelled_by else None,
        cancellation_reason=row.cancellation_reason,
        version=row.version,
    )


def reservation_values(r: Reservation) -> dict:
    refund = r.refund
    dispute = r.dispute
    return {
        "reservation_id": r.reservation_id,
        "reference_code": r.reference_code,
        "resource_id": r.resource_id,
        "renter_id": r.renter_id,
        "owner_id": r.owner_id,
        "start_at": _utc(r.start),
        "end_at": _utc(r.end),
        "status": r.status.value,
        "version": r.version,
        "delivery_requested": r.delivery_requested,
        "base_amount": r.pricing.base_amount,
        "deposit": r.pricing.deposit,
        "service_fee": r.pricing.service_fee,
        "delivery_fee": r.pricing.delivery_fee,
        "taxes": r.pricing.taxes,
        "total_amount": r.pricing.total_amount,
        "currency": r.pricing.currency,
        "payment_ref": r.payment.payment_ref,
        "payment_status": r.payment.status.value,
        "paid_at": _utc(r.payment.paid_at),
        "refund_reason": refund.reason if refund else None,
        "refund_amount": refund.amount if refund else None,
        "refund_service_fee": refund.service_fee_refund if refund else None,
        "refund_percentage": refund.percentage if refund else None,
        "refund_ref": refund.refund_ref if refund else None,
        "refund_processed_at": _utc(refund.processed_at) if refund else None,
        "dispute_reason": dispute.reason.value if dispute else None,
        "dispute_description": dispute.description if dispute else None,
        "disputed_by": dispute.raised_by if dispute else None,
        "disputed_at": _utc(dispute.raised_at) if dispute else None,
        "dispute_previous_status": dispute.previous_status.value if dispute else None,
        "dispute_decision": dispute.decision if dispute else None,
        "dispute_resolved_at": _utc(dispute.resolved_at) if dispute else None,
        "requested_at": _utc(r.requested_at),
        "confirmed_at": _utc(r.confirmed_at),
        "activated_at": _utc(r.activated_at),
        "cancelled_at": _utc(r.cancelled_at),
        "completed_at": _utc(r.completed_at),
        "expired_at": _utc(r.expired_at),
        "cancelled_by": r.cancelled_by.value if r.cancelled_by else None,
        "cancellation_reason": r.cancellation_reason,
    }


class SqlAlchemyReservationStore(ReservationStore):
    """
    Store backed by async SQLAlchemy.

    Check-and-write runs in one transaction holding a row lock on the
    resource (SELECT ... FOR UPDATE), which serialises concurrent writers for
    the same resource on Postgres. Updates are compare-and-set on `version`.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def get_resource(self, resource_id: str) -> Resource:
        async with self.session_factory() as db:
            res = await db.execute(select(ResourceRow).where(ResourceRow.resource_id == resource_id))
            row = res.scalar_one_or_none()
            if not row:
                raise NotFoundError(f"Resource {resource_id} not found")
            return resource_to_domain(row)

    async def save_resource(self, resource: Resource) -> Resource:
        values = resource_values(resource)
        async with self.session_factory() as db:
            async with db.begin():
                res = await db.execute(
                    select(ResourceRow).where(ResourceRow.resource_id == resource.resource_id).with_for_update()
                )
                row = res.scalar_one_or_none()
                if row is None:
                    db.add(ResourceRow(**values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
        return resource

    async def get_reservation(self, reservation_id: str) -> Reservation:
        async with self.session_factory() as db:
            res = await db.execute(
                select(ReservationRow).where(ReservationRow.reservation_id == reservation_id)
            )
            row = res.scalar_one_or_none()
            if not row:
                raise NotFoundError(f"Reservation {reservation_id} not found")
            return reservation_to_domain(row)

    async def list_reservations(self, resource_id, statuses=None):
        stmt = select(ReservationRow).where(ReservationRow.resource_id == resource_id)
        if statuses is not None:
            stmt = stmt.where(ReservationRow.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(ReservationRow.start_at)
        async with self.session_factory() as db:
            res = await db.execute(stmt)
            return [reservation_to_domain(row) for row in res.scalars().all()]

    @staticmethod
    def _overlap_stmt(resource_id, start, end, statuses, exclude_reservation_id, inclusive):
        start = as_utc(start)
        end = as_utc(end)
        if inclusive:
            clause = and_(ReservationRow.start_at <= end, ReservationRow.end_at >= start)
        else:
            clause = and_(ReservationRow.start_at < end, ReservationRow.end_at > start)

        stmt = select(ReservationRow).where(
            ReservationRow.resource_id == resource_id,
            ReservationRow.status.in_([s.value for s in statuses]),
            clause,
        )
        if exclude_reservation_id:
            stmt = stmt.where(ReservationRow.reservation_id != exclude_reservation_id)
        return stmt.order_by(ReservationRow.start_at)

    async def _overlapping(self, db, *args) -> list[Reservation]:
        res = await db.execute(self._overlap_stmt(*args))
        return [reservation_to_domain(row) for row in res.scalars().all()]

    async def _lock_resource(self, db, resource_id: str) -> None:
        res = await db.execute(
            select(ResourceRow.id).where(ResourceRow.resource_id == resource_id).with_for_update()
        )
        if res.scalar_one_or_none() is None:
            raise NotFoundError(f"Resource {resource_id} not found")

    async def find_overlapping(
        self,
        resource_id,
        start,
        end,
        statuses,
        exclude_reservation_id=None,
        inclusive=False,
    ):
        async with self.session_factory() as db:
            return await self._overlapping(db, resource_id, start, end, statuses, exclude_reservation_id, inclusive)

    async def insert_if_available(self, reservation, statuses, inclusive=False):
        async with self.session_factory() as db:
            async with db.begin():
                await self._lock_resource(db, reservation.resource_id)
                conflicts = await self._overlapping(
                    db, reservation.resource_id, reservation.start, reservation.end, statuses, None, inclusive
                )
                if conflicts:
                    raise ConflictError("Resource is not available for the requested interval", conflicts)
                db.add(ReservationRow(**reservation_values(reservation)))
        return reservation

    async def _compare_and_set(self, db, reservation: Reservation, expected_version: int) -> Reservation:
        values = reservation_values(reservation)
        values["version"] = expected_version + 1
        result = await db.execute(
            update(ReservationRow)
            .where(
                ReservationRow.reservation_id == reservation.reservation_id,
                ReservationRow.version == expected_version,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            res = await db.execute(
                select(ReservationRow.version).where(ReservationRow.reservation_id == reservation.reservation_id)
            )
            found = res.scalar_one_or_none()
            if found is None:
                raise NotFoundError(f"Reservation {reservation.reservation_id} not found")
            raise StaleStateError(
                f"Reservation {reservation.reservation_id} changed concurrently "
                f"(expected version {expected_version}, found {found})"
            )
        return dataclasses.replace(reservation, version=expected_version + 1)

    async def update(self, reservation, expected_version):
        async with self.session_factory() as db:
            async with db.begin():
                return await self._compare_and_set(db, reservation, expected_version)

    async def update_if_available(self, reservation, expected_version, statuses, inclusive=False):
        async with self.session_factory() as db:
            async with db.begin():
                await self._lock_resource(db, reservation.resource_id)
                conflicts = await self._overlapping(
                    db,
                    reservation.resource_id,
                    reservation.start,
                    reservation.end,
                    statuses,
                    reservation.reservation_id,
                    inclusive,
                )
                if conflicts:
                    raise ConflictError("Resource is not available for the requested interval", conflicts)
                return await self._compare_and_set(db, reservation, expected_version)

    async def list_due(self, now, requested_before):
        now = as_utc(now)
        requested_before = as_utc(requested_before)
        stmt = (
            select(ReservationRow)
            .where(
                or_(
                    and_(
                        ReservationRow.status == ReservationStatus.PENDING.value,
                        or_(ReservationRow.requested_at <= requested_before, ReservationRow.start_at <= now),
                    ),
                    and_(
                        ReservationRow.status == ReservationStatus.CONFIRMED.value,
                        ReservationRow.start_at <= now,
                    ),
                    and_(
                        ReservationRow.status == ReservationStatus.ACTIVE.value,
                        ReservationRow.end_at <= now,
                    ),
                )
            )
            .order_by(ReservationRow.start_at, ReservationRow.reservation_id)
        )
        async with self.session_factory() as db:
            res = await db.execute(stmt)
            return [reservation_to_domain(row) for row in res.scalars().all()]
