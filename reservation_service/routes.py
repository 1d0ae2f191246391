from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .commands import (
    CancelReservation,
    RaiseDispute,
    RejectReservation,
    RequestReservation,
    RescheduleReservation,
    ResolveDispute,
)
from .domain import Actor, DeliveryTerms, PricingTiers, ReservationStatus, Resource, as_utc
from .errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PaymentError,
    PricingError,
    ReservationError,
    StateTransitionError,
    ValidationError,
)
from .lifecycle import ReservationLifecycle
from .rbac import get_actor, require_role
from .schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    ConflictResponse,
    CreateReservationRequest,
    DisputeRequest,
    IntervalRequest,
    PricingResponse,
    QuoteRequest,
    ReasonRequest,
    ReservationResponse,
    ResolveDisputeRequest,
    UpsertResource,
)

router = APIRouter()

# most specific first: StaleStateError is a ConflictError
ERROR_STATUS = [
    (ValidationError, 422),
    (PricingError, 422),
    (NotFoundError, 404),
    (AuthorizationError, 403),
    (StateTransitionError, 409),
    (ConflictError, 409),
    (PaymentError, 502),
]


def http_error(e: ReservationError) -> HTTPException:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(e, cls)), 400)
    detail = {"error": e.kind, "message": e.message}
    if isinstance(e, ConflictError) and e.conflicts:
        detail["conflicts"] = [c.reservation_id for c in e.conflicts]
    if isinstance(e, StateTransitionError):
        detail["current"] = e.current
        detail["requested"] = e.requested
    return HTTPException(status_code=status_code, detail=detail)


async def _run(awaitable):
    try:
        return await awaitable
    except ReservationError as e:
        raise http_error(e)


def get_lifecycle(request: Request) -> ReservationLifecycle:
    return request.app.state.lifecycle


# ================= RESERVATIONS =================

@router.post("/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    data: CreateReservationRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    cmd = RequestReservation(
        resource_id=data.resource_id,
        start=data.start,
        end=data.end,
        delivery_requested=data.delivery_requested,
    )
    reservation = await _run(lifecycle.request_reservation(cmd, actor))
    return ReservationResponse.from_domain(reservation)


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    reservation = await _run(lifecycle.get(reservation_id, actor))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/approve", response_model=ReservationResponse)
async def approve_reservation(
    reservation_id: str,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    reservation = await _run(lifecycle.approve(reservation_id, actor))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/reject", response_model=ReservationResponse)
async def reject_reservation(
    reservation_id: str,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    cmd = RejectReservation(reason=data.reason if data else None)
    reservation = await _run(lifecycle.reject(reservation_id, actor, cmd))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationResponse)
async def cancel_reservation(
    reservation_id: str,
    data: Optional[ReasonRequest] = None,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    cmd = CancelReservation(reason=data.reason if data else None)
    reservation = await _run(lifecycle.cancel(reservation_id, actor, cmd))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/dispute", response_model=ReservationResponse)
async def dispute_reservation(
    reservation_id: str,
    data: DisputeRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    cmd = RaiseDispute(reason=data.reason, description=data.description)
    reservation = await _run(lifecycle.dispute(reservation_id, actor, cmd))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/resolve-dispute", response_model=ReservationResponse)
async def resolve_dispute(
    reservation_id: str,
    data: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    require_role(actor, ["admin"])
    cmd = ResolveDispute(
        outcome=ReservationStatus(data.outcome),
        refund_amount=data.refund_amount,
        decision=data.decision,
    )
    reservation = await _run(lifecycle.resolve_dispute(reservation_id, actor, cmd))
    return ReservationResponse.from_domain(reservation)


@router.post("/reservations/{reservation_id}/reschedule", response_model=ReservationResponse)
async def reschedule_reservation(
    reservation_id: str,
    data: IntervalRequest,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    cmd = RescheduleReservation(start=data.start, end=data.end)
    reservation = await _run(lifecycle.reschedule(reservation_id, actor, cmd))
    return ReservationResponse.from_domain(reservation)


# ================= RESOURCES =================

@router.get("/resources/{resource_id}/reservations", response_model=List[ReservationResponse])
async def list_resource_reservations(
    resource_id: str,
    status: Optional[List[ReservationStatus]] = Query(default=None),
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    reservations = await _run(lifecycle.list_for_resource(resource_id, status))
    if not actor.is_admin:
        reservations = [r for r in reservations if r.is_party(actor.user_id)]
    return [ReservationResponse.from_domain(r) for r in reservations]


@router.post("/resources/{resource_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    resource_id: str,
    data: AvailabilityRequest,
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    conflicts = await _run(
        lifecycle.find_conflicts(resource_id, data.start, data.end, data.exclude_reservation_id)
    )
    return AvailabilityResponse(
        available=not conflicts,
        conflicts=[
            ConflictResponse(
                reservation_id=r.reservation_id,
                start=r.start,
                end=r.end,
                status=r.status.value,
            )
            for r in conflicts
        ],
    )


@router.post("/resources/{resource_id}/quote", response_model=PricingResponse)
async def quote_resource(
    resource_id: str,
    data: QuoteRequest,
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    snapshot = await _run(lifecycle.quote(resource_id, data.start, data.end, data.delivery_requested))
    return PricingResponse.from_domain(snapshot)


@router.put("/resources/{resource_id}")
async def upsert_resource(
    resource_id: str,
    data: UpsertResource,
    actor: Actor = Depends(get_actor),
    lifecycle: ReservationLifecycle = Depends(get_lifecycle),
):
    require_role(actor, ["admin", "system"])
    resource = Resource(
        resource_id=resource_id,
        owner_id=data.owner_id,
        pricing=PricingTiers(
            hourly=data.pricing.hourly,
            daily=data.pricing.daily,
            weekly=data.pricing.weekly,
            monthly=data.pricing.monthly,
            deposit=data.pricing.deposit,
            currency=data.pricing.currency,
        ),
        delivery=DeliveryTerms(available=data.delivery.available, fee=data.delivery.fee),
        min_rental_hours=data.min_rental_hours,
        max_rental_hours=data.max_rental_hours,
        advance_booking_days=data.advance_booking_days,
        instant_booking=data.instant_booking,
        deleted_at=as_utc(data.deleted_at) if data.deleted_at else None,
    )
    await lifecycle.store.save_resource(resource)
    return {"resource_id": resource_id, "status": "saved"}
