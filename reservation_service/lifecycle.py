import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from . import statemachine as sm
from .availability import AvailabilityChecker
from .commands import (
    CancelReservation,
    RaiseDispute,
    RejectReservation,
    RequestReservation,
    RescheduleReservation,
    ResolveDispute,
)
from .config import EngineSettings
from .domain import (
    HOLDING_STATUSES,
    Actor,
    CancelledBy,
    DisputeRecord,
    PaymentInfo,
    PaymentStatus,
    PricingSnapshot,
    RefundRecord,
    Reservation,
    ReservationStatus,
    Resource,
    ZERO,
    as_utc,
    new_reference_code,
    new_reservation_id,
    utcnow,
)
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentError,
    StaleStateError,
    StateTransitionError,
    ValidationError,
)
from .locks import LocalReservationLocks
from .notifications import (
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
    RESERVATION_CONFIRMED,
    RESERVATION_DISPUTED,
    RESERVATION_EXPIRED,
    RESERVATION_REQUESTED,
)
from .pricing import RateFeePolicy, quote, round_money
from .refunds import compute_refund
from .store import is_due

logger = logging.getLogger(__name__)

S = ReservationStatus


@dataclass
class SweepReport:
    expired: int = 0
    activated: int = 0
    completed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.activated + self.completed


class ReservationLifecycle:
    """
    Owns reservation status transitions.

    Every command takes the reservation's lock, loads the current reservation,
    checks the actor, applies one transition from the state machine and writes
    it back with a compare-and-set on `version`. Money moves (capture/refund)
    happen under the same lock, before the write. If an approval then loses the
    interval to an overlapping confirmation the capture is refunded and the
    error propagates.
    """

    def __init__(
        self,
        store,
        payments,
        notifier,
        settings: EngineSettings | None = None,
        fee_policy: RateFeePolicy | None = None,
        clock=utcnow,
        locks=None,
    ):
        self.store = store
        self.payments = payments
        self.notifier = notifier
        self.settings = settings or EngineSettings()
        self.fee_policy = fee_policy or RateFeePolicy.from_settings(self.settings)
        self.clock = clock
        self.locks = locks or LocalReservationLocks()
        self.checker = AvailabilityChecker(store, inclusive_bounds=self.settings.inclusive_bounds)

    @property
    def creation_blocking_statuses(self) -> frozenset[ReservationStatus]:
        if self.settings.pending_holds_interval:
            return HOLDING_STATUSES | {S.PENDING}
        return HOLDING_STATUSES

    # ---------- queries ----------

    async def get(self, reservation_id: str, actor: Actor | None = None) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        if actor is not None and not (reservation.is_party(actor.user_id) or actor.is_admin):
            raise AuthorizationError("Only the renter, the owner or an admin may view this reservation")
        return reservation

    async def list_for_resource(self, resource_id: str, statuses=None) -> list[Reservation]:
        await self.store.get_resource(resource_id)
        return await self.store.list_reservations(resource_id, statuses)

    async def find_conflicts(self, resource_id, start, end, exclude_reservation_id=None) -> list[Reservation]:
        return await self.checker.find_conflicts(
            resource_id, as_utc(start), as_utc(end), exclude_reservation_id
        )

    async def quote(self, resource_id: str, start, end, delivery_requested: bool = False) -> PricingSnapshot:
        resource = await self._bookable_resource(resource_id)
        return self._price(resource, as_utc(start), as_utc(end), delivery_requested)

    # ---------- create ----------

    async def request_reservation(self, cmd: RequestReservation, actor: Actor) -> Reservation:
        now = self.clock()
        start, end = as_utc(cmd.start), as_utc(cmd.end)

        resource = await self._bookable_resource(cmd.resource_id)
        if actor.user_id == resource.owner_id:
            raise ValidationError("Renter cannot be the same as the owner")
        self._validate_interval(resource, start, end, now)

        blocking = self.creation_blocking_statuses
        conflicts = await self.checker.find_conflicts(resource.resource_id, start, end, statuses=blocking)
        if conflicts:
            raise ConflictError("Resource is not available for the requested interval", conflicts)

        reservation = Reservation(
            reservation_id=new_reservation_id(),
            reference_code=new_reference_code(now),
            resource_id=resource.resource_id,
            renter_id=actor.user_id,
            owner_id=resource.owner_id,
            start=start,
            end=end,
            status=S.PENDING,
            pricing=self._price(resource, start, end, cmd.delivery_requested),
            requested_at=now,
            delivery_requested=cmd.delivery_requested,
        )

        # re-checks under the store's per-resource guard
        stored = await self.store.insert_if_available(
            reservation, blocking, inclusive=self.settings.inclusive_bounds
        )
        logger.info(
            "reservation %s (%s) requested on resource %s by %s for %s..%s",
            stored.reservation_id,
            stored.reference_code,
            stored.resource_id,
            stored.renter_id,
            start.isoformat(),
            end.isoformat(),
        )
        await self.notifier.notify(RESERVATION_REQUESTED, stored)

        if resource.instant_booking:
            try:
                async with self.locks.guard(stored.reservation_id):
                    current = await self.store.get_reservation(stored.reservation_id)
                    if current.status == S.PENDING:
                        stored = await self._approve(current, self.clock())
            except (PaymentError, ConflictError) as e:
                logger.warning(
                    "instant booking approval of %s failed, left pending: %s", stored.reservation_id, e
                )
        return stored

    # ---------- owner decision ----------

    async def approve(self, reservation_id: str, actor: Actor) -> Reservation:
        async with self.locks.guard(reservation_id):
            reservation = await self.store.get_reservation(reservation_id)
            if actor.user_id != reservation.owner_id:
                raise AuthorizationError("Only the owner may approve this reservation")

            if sm.is_repeat(reservation.status, sm.APPROVE):
                logger.info("approve on %s repeated; already confirmed", reservation_id)
                return reservation
            sm.next_status(reservation.status, sm.APPROVE)

            return await self._approve(reservation, self.clock())

    async def _approve(self, reservation: Reservation, now: datetime) -> Reservation:
        if now >= reservation.start:
            raise ValidationError("Reservation start has already passed; it can no longer be approved")

        pricing = reservation.pricing
        payment_ref = await self.payments.authorize(pricing.total_amount, pricing.currency, reservation.renter_id)
        await self.payments.capture(payment_ref)

        confirmed = sm.apply_transition(
            reservation,
            sm.APPROVE,
            now,
            payment=PaymentInfo(payment_ref=payment_ref, status=PaymentStatus.PAID, paid_at=now),
        )
        try:
            stored = await self.store.update_if_available(
                confirmed,
                reservation.version,
                HOLDING_STATUSES,
                inclusive=self.settings.inclusive_bounds,
            )
        except ConflictError:
            await self._compensate_capture(reservation, payment_ref)
            raise

        logger.info("reservation %s confirmed (payment %s)", stored.reservation_id, payment_ref)
        await self.notifier.notify(RESERVATION_CONFIRMED, stored)
        return stored

    async def _compensate_capture(self, reservation: Reservation, payment_ref: str) -> None:
        try:
            await self.payments.refund(
                payment_ref,
                reservation.pricing.total_amount,
                idempotency_key=f"refund:{reservation.reservation_id}:compensation",
            )
            logger.warning(
                "approval of %s lost a race after capture; payment %s refunded",
                reservation.reservation_id,
                payment_ref,
            )
        except PaymentError:
            logger.exception(
                "approval of %s lost a race and the compensating refund of %s failed; manual intervention required",
                reservation.reservation_id,
                payment_ref,
            )

    async def reject(self, reservation_id: str, actor: Actor, cmd: RejectReservation | None = None) -> Reservation:
        async with self.locks.guard(reservation_id):
            return await self._reject(reservation_id, actor, cmd or RejectReservation())

    async def _reject(self, reservation_id: str, actor: Actor, cmd: RejectReservation) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        if actor.user_id != reservation.owner_id:
            raise AuthorizationError("Only the owner may reject this reservation")

        if sm.is_repeat(reservation.status, sm.REJECT):
            return reservation

        cancelled = sm.apply_transition(
            reservation,
            sm.REJECT,
            self.clock(),
            cancelled_by=CancelledBy.OWNER,
            cancellation_reason=cmd.reason or "rejected by owner",
        )
        stored = await self.store.update(cancelled, reservation.version)
        logger.info("reservation %s rejected by owner", reservation_id)
        await self.notifier.notify(RESERVATION_CANCELLED, stored)
        return stored

    # ---------- cancellation ----------

    async def cancel(self, reservation_id: str, actor: Actor, cmd: CancelReservation | None = None) -> Reservation:
        async with self.locks.guard(reservation_id):
            return await self._cancel(reservation_id, actor, cmd or CancelReservation())

    async def _cancel(self, reservation_id: str, actor: Actor, cmd: CancelReservation) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        cancelled_by = self._cancelling_party(reservation, actor)

        if sm.is_repeat(reservation.status, sm.CANCEL):
            return reservation
        sm.next_status(reservation.status, sm.CANCEL)

        now = self.clock()
        reason = cmd.reason or f"{cancelled_by.value}_cancellation"
        changes = {"cancelled_by": cancelled_by, "cancellation_reason": reason}

        # pending reservations were never charged
        if reservation.status in HOLDING_STATUSES:
            refund_quote = compute_refund(reservation, cancelled_by, now)
            logger.info(
                "cancellation of %s by %s %.1fh before start: %s",
                reservation_id,
                cancelled_by.value,
                refund_quote.hours_until_start,
                refund_quote.policy_basis,
            )
            changes.update(
                await self._issue_refund(
                    reservation,
                    amount=refund_quote.refund_amount,
                    service_fee_refund=refund_quote.service_fee_refund,
                    percentage=refund_quote.refund_percentage,
                    reason=reason,
                    now=now,
                )
            )

        cancelled = sm.apply_transition(reservation, sm.CANCEL, now, **changes)
        stored = await self._write_after_refund(cancelled, reservation.version)
        logger.info("reservation %s cancelled by %s", reservation_id, cancelled_by.value)
        await self.notifier.notify(RESERVATION_CANCELLED, stored)
        return stored

    def _cancelling_party(self, reservation: Reservation, actor: Actor) -> CancelledBy:
        if actor.user_id == reservation.owner_id:
            return CancelledBy.OWNER
        if actor.user_id == reservation.renter_id:
            return CancelledBy.RENTER
        if actor.is_admin:
            return CancelledBy.SYSTEM
        raise AuthorizationError("Only the renter or the owner may cancel this reservation")

    async def _issue_refund(
        self,
        reservation: Reservation,
        amount: Decimal,
        service_fee_refund: Decimal,
        percentage: Decimal,
        reason: str,
        now: datetime,
    ) -> dict:
        """Refund through the gateway; returns the refund/payment field changes (empty when nothing is due)."""
        if amount <= 0:
            return {}

        payment_ref = reservation.payment.payment_ref
        if not payment_ref:
            raise PaymentError(f"Reservation {reservation.reservation_id} has no captured payment to refund")

        refund_ref = await self.payments.refund(
            payment_ref,
            amount,
            idempotency_key=f"refund:{reservation.reservation_id}:v{reservation.version}",
        )

        already = reservation.refund.amount if reservation.refund else ZERO
        refunded_total = already + amount
        status = (
            PaymentStatus.REFUNDED
            if refunded_total >= reservation.pricing.total_amount
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        return {
            "refund": RefundRecord(
                reason=reason,
                amount=refunded_total,
                service_fee_refund=service_fee_refund,
                percentage=percentage,
                refund_ref=refund_ref,
                processed_at=now,
            ),
            "payment": dataclasses.replace(reservation.payment, status=status),
        }

    async def _write_after_refund(self, reservation: Reservation, expected_version: int) -> Reservation:
        try:
            return await self.store.update(reservation, expected_version)
        except StaleStateError:
            if reservation.refund is not None:
                logger.error(
                    "refund %s issued for %s but the reservation changed concurrently; needs reconciliation",
                    reservation.refund.refund_ref,
                    reservation.reservation_id,
                )
            raise

    # ---------- disputes ----------

    async def dispute(self, reservation_id: str, actor: Actor, cmd: RaiseDispute) -> Reservation:
        async with self.locks.guard(reservation_id):
            return await self._dispute(reservation_id, actor, cmd)

    async def _dispute(self, reservation_id: str, actor: Actor, cmd: RaiseDispute) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        if not (reservation.is_party(actor.user_id) or actor.is_admin):
            raise AuthorizationError("Only the renter or the owner may dispute this reservation")

        if sm.is_repeat(reservation.status, sm.DISPUTE):
            return reservation

        now = self.clock()
        disputed = sm.apply_transition(
            reservation,
            sm.DISPUTE,
            now,
            dispute=DisputeRecord(
                reason=cmd.reason,
                description=cmd.description,
                raised_by=actor.user_id,
                raised_at=now,
                previous_status=reservation.status,
            ),
        )
        stored = await self.store.update(disputed, reservation.version)
        logger.info("reservation %s disputed by %s (%s)", reservation_id, actor.user_id, cmd.reason.value)
        await self.notifier.notify(RESERVATION_DISPUTED, stored)
        return stored

    async def resolve_dispute(self, reservation_id: str, actor: Actor, cmd: ResolveDispute) -> Reservation:
        async with self.locks.guard(reservation_id):
            return await self._resolve_dispute(reservation_id, actor, cmd)

    async def _resolve_dispute(self, reservation_id: str, actor: Actor, cmd: ResolveDispute) -> Reservation:
        if not (actor.is_admin or "system" in actor.roles):
            raise AuthorizationError("Only an admin may resolve disputes")
        if cmd.outcome not in (S.COMPLETED, S.CANCELLED):
            raise ValidationError(f"Dispute outcome must be completed or cancelled, got {cmd.outcome}")

        reservation = await self.store.get_reservation(reservation_id)
        if (
            sm.is_repeat(reservation.status, sm.RESOLVE_DISPUTE, cmd.outcome)
            and reservation.dispute is not None
            and reservation.dispute.resolved_at is not None
        ):
            return reservation
        sm.next_status(reservation.status, sm.RESOLVE_DISPUTE, cmd.outcome)

        amount = round_money(cmd.refund_amount or ZERO)
        already = reservation.refund.amount if reservation.refund else ZERO
        refundable = reservation.pricing.total_amount - already
        if amount < 0:
            raise ValidationError("refund_amount cannot be negative")
        if amount > refundable:
            raise ValidationError(f"refund_amount {amount} exceeds the refundable balance {refundable}")

        now = self.clock()
        reason = "dispute_resolution"
        changes = {
            "dispute": dataclasses.replace(reservation.dispute, decision=cmd.decision, resolved_at=now),
        }
        if cmd.outcome == S.CANCELLED:
            changes.update(cancelled_by=CancelledBy.SYSTEM, cancellation_reason=reason)
        total = reservation.pricing.total_amount
        changes.update(
            await self._issue_refund(
                reservation,
                amount=amount,
                service_fee_refund=ZERO,
                percentage=round_money(amount / total) if total else ZERO,
                reason=reason,
                now=now,
            )
        )

        resolved = sm.apply_transition(reservation, sm.RESOLVE_DISPUTE, now, outcome=cmd.outcome, **changes)
        stored = await self._write_after_refund(resolved, reservation.version)
        logger.info("dispute on %s resolved as %s (refund %s)", reservation_id, cmd.outcome.value, amount)
        event = RESERVATION_COMPLETED if cmd.outcome == S.COMPLETED else RESERVATION_CANCELLED
        await self.notifier.notify(event, stored)
        return stored

    # ---------- reschedule ----------

    async def reschedule(self, reservation_id: str, actor: Actor, cmd: RescheduleReservation) -> Reservation:
        """
        Move a reservation to a new interval.

        pending: re-priced explicitly (no payment taken yet).
        confirmed: only to an interval of the same length; the paid snapshot stays.
        """
        async with self.locks.guard(reservation_id):
            return await self._reschedule(reservation_id, actor, cmd)

    async def _reschedule(self, reservation_id: str, actor: Actor, cmd: RescheduleReservation) -> Reservation:
        reservation = await self.store.get_reservation(reservation_id)
        if not reservation.is_party(actor.user_id):
            raise AuthorizationError("Only the renter or the owner may reschedule this reservation")

        if reservation.status not in (S.PENDING, S.CONFIRMED):
            raise StateTransitionError(reservation.status, reservation.status, "reschedule")

        now = self.clock()
        start, end = as_utc(cmd.start), as_utc(cmd.end)
        resource = await self._bookable_resource(reservation.resource_id)
        self._validate_interval(resource, start, end, now)

        if reservation.status == S.PENDING:
            blocking = self.creation_blocking_statuses
            pricing = self._price(resource, start, end, reservation.delivery_requested)
        else:
            if (end - start) != (reservation.end - reservation.start):
                raise ValidationError("A confirmed reservation can only move to an interval of the same length")
            blocking = HOLDING_STATUSES
            pricing = reservation.pricing

        conflicts = await self.checker.find_conflicts(
            reservation.resource_id, start, end, exclude_reservation_id=reservation_id, statuses=blocking
        )
        if conflicts:
            raise ConflictError("Resource is not available for the requested interval", conflicts)

        moved = dataclasses.replace(reservation, start=start, end=end, pricing=pricing)
        stored = await self.store.update_if_available(
            moved, reservation.version, blocking, inclusive=self.settings.inclusive_bounds
        )
        logger.info(
            "reservation %s rescheduled to %s..%s by %s",
            reservation_id,
            start.isoformat(),
            end.isoformat(),
            actor.user_id,
        )
        return stored

    # ---------- time-driven transitions ----------

    async def advance_due(self, now: datetime | None = None) -> SweepReport:
        now = now or self.clock()
        requested_before = now - timedelta(hours=self.settings.approval_timeout_hours)
        report = SweepReport()

        for reservation in await self.store.list_due(now, requested_before):
            try:
                async with self.locks.guard(reservation.reservation_id):
                    current = await self.store.get_reservation(reservation.reservation_id)
                    if is_due(current, now, requested_before):
                        await self._advance(current, now, report)
            except StaleStateError:
                # someone else moved it; the next sweep sees the fresh state
                report.skipped += 1
                logger.info("sweep skipped %s: changed concurrently", reservation.reservation_id)

        if report.total or report.skipped:
            logger.info(
                "sweep at %s: expired=%d activated=%d completed=%d skipped=%d",
                now.isoformat(),
                report.expired,
                report.activated,
                report.completed,
                report.skipped,
            )
        return report

    async def _advance(self, reservation: Reservation, now: datetime, report: SweepReport) -> None:
        if reservation.status == S.PENDING:
            expired = sm.apply_transition(reservation, sm.EXPIRE, now)
            stored = await self.store.update(expired, reservation.version)
            report.expired += 1
            await self.notifier.notify(RESERVATION_EXPIRED, stored)
            return

        if reservation.status == S.CONFIRMED and now >= reservation.start:
            activated = sm.apply_transition(reservation, sm.ACTIVATE, now)
            reservation = await self.store.update(activated, reservation.version)
            report.activated += 1

        if reservation.status == S.ACTIVE and now >= reservation.end:
            completed = sm.apply_transition(reservation, sm.COMPLETE, now)
            stored = await self.store.update(completed, reservation.version)
            report.completed += 1
            await self.notifier.notify(RESERVATION_COMPLETED, stored)

    # ---------- helpers ----------

    async def _bookable_resource(self, resource_id: str) -> Resource:
        resource = await self.store.get_resource(resource_id)
        if resource.is_deleted:
            raise NotFoundError(f"Resource {resource_id} not found")
        return resource

    def _price(self, resource: Resource, start, end, delivery_requested: bool) -> PricingSnapshot:
        return quote(
            resource.pricing,
            start,
            end,
            self.fee_policy,
            delivery=resource.delivery,
            delivery_requested=delivery_requested,
        )

    @staticmethod
    def _validate_interval(resource: Resource, start: datetime, end: datetime, now: datetime) -> None:
        if end <= start:
            raise ValidationError("End date must be after start date")
        if start < now:
            raise ValidationError("Start date cannot be in the past")

        hours = (end - start).total_seconds() / 3600
        if hours < resource.min_rental_hours:
            raise ValidationError(f"Minimum rental period is {resource.min_rental_hours} hour(s)")
        if hours > resource.max_rental_hours:
            raise ValidationError(f"Maximum rental period is {resource.max_rental_hours} hours")
        if start > now + timedelta(days=resource.advance_booking_days):
            raise ValidationError(f"Bookings open at most {resource.advance_booking_days} days ahead")
