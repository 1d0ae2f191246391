from decimal import Decimal

import pytest

from conftest import DAY1, OTHER_RENTER, OWNER, RENTER, at, make_resource, request
from reservation_service.commands import CancelReservation, RaiseDispute
from reservation_service.db import Base, get_engine, get_session
from reservation_service.domain import DisputeReason, PaymentStatus, ReservationStatus
from reservation_service.errors import ConflictError, NotFoundError, StaleStateError
from reservation_service.lifecycle import ReservationLifecycle
from reservation_service.notifications import EventNotifier
from reservation_service.sql_store import SqlAlchemyReservationStore

S = ReservationStatus


@pytest.fixture
async def sql_store(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlAlchemyReservationStore(get_session(engine))
    await engine.dispose()


@pytest.fixture
async def sql_lifecycle(sql_store, payments, publisher, clock):
    await sql_store.save_resource(make_resource())
    return ReservationLifecycle(sql_store, payments, EventNotifier(publisher), clock=clock)


@pytest.mark.asyncio
async def test_resource_round_trip_and_update(sql_store):
    await sql_store.save_resource(make_resource(instant_booking=True))
    await sql_store.save_resource(make_resource(owner_id="owner-2"))

    loaded = await sql_store.get_resource("res-1")
    assert loaded.owner_id == "owner-2"
    assert loaded.pricing.daily == Decimal("50.00")
    assert loaded.pricing.monthly is None
    assert loaded.delivery.fee == Decimal("15.00")

    with pytest.raises(NotFoundError):
        await sql_store.get_resource("missing")


@pytest.mark.asyncio
async def test_full_lifecycle_persists(sql_lifecycle):
    r = await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    loaded = await sql_lifecycle.get(r.reservation_id)
    assert loaded.start == at(DAY1, 9)
    assert loaded.pricing == r.pricing

    confirmed = await sql_lifecycle.approve(r.reservation_id, OWNER)
    assert (await sql_lifecycle.get(r.reservation_id)).payment.status == PaymentStatus.PAID

    await sql_lifecycle.dispute(r.reservation_id, RENTER, RaiseDispute(reason=DisputeReason.DAMAGE, description="dent"))
    disputed = await sql_lifecycle.get(r.reservation_id)
    assert disputed.status == S.DISPUTED
    assert disputed.dispute.previous_status == S.CONFIRMED
    assert disputed.version == confirmed.version + 1


@pytest.mark.asyncio
async def test_cancellation_refund_persists(sql_lifecycle):
    r = await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await sql_lifecycle.approve(r.reservation_id, OWNER)
    await sql_lifecycle.cancel(r.reservation_id, OWNER, CancelReservation(reason="broken"))

    loaded = await sql_lifecycle.get(r.reservation_id)
    assert loaded.status == S.CANCELLED
    assert loaded.refund.amount == Decimal("55.00")
    assert loaded.refund.percentage == Decimal("1.00")
    assert loaded.cancellation_reason == "broken"


@pytest.mark.asyncio
async def test_overlap_query_respects_half_open_bounds(sql_lifecycle, sql_store):
    r = await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await sql_lifecycle.approve(r.reservation_id, OWNER)

    holding = frozenset({S.CONFIRMED, S.ACTIVE})
    assert await sql_store.find_overlapping("res-1", at(DAY1, 17), at(DAY1, 20), holding) == []
    assert len(await sql_store.find_overlapping("res-1", at(DAY1, 16), at(DAY1, 20), holding)) == 1
    assert len(await sql_store.find_overlapping("res-1", at(DAY1, 17), at(DAY1, 20), holding, inclusive=True)) == 1


@pytest.mark.asyncio
async def test_insert_if_available_rejects_overlap(sql_lifecycle):
    await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    with pytest.raises(ConflictError):
        await sql_lifecycle.request_reservation(request(at(DAY1, 12), at(DAY1, 13)), OTHER_RENTER)


@pytest.mark.asyncio
async def test_compare_and_set_detects_stale_version(sql_lifecycle, sql_store):
    r = await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await sql_lifecycle.reject(r.reservation_id, OWNER)

    with pytest.raises(StaleStateError):
        await sql_store.update(r, r.version)


@pytest.mark.asyncio
async def test_list_due_and_sweep(sql_lifecycle):
    r = await sql_lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await sql_lifecycle.approve(r.reservation_id, OWNER)

    report = await sql_lifecycle.advance_due(at(DAY1, 18))
    assert (report.activated, report.completed) == (1, 1)
    assert (await sql_lifecycle.get(r.reservation_id)).status == S.COMPLETED

