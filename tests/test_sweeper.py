import asyncio
from datetime import timedelta

import pytest

from conftest import DAY1, OTHER_RENTER, OWNER, RENTER, at, request
from reservation_service.domain import ReservationStatus
from reservation_service.scheduler import PollingSweeper

S = ReservationStatus


@pytest.mark.asyncio
async def test_pending_request_expires_after_approval_timeout(lifecycle, resource, clock, publisher):
    start = clock.now + timedelta(days=5)
    r = await lifecycle.request_reservation(request(start, start + timedelta(hours=4)), RENTER)

    report = await lifecycle.advance_due(clock.now + timedelta(hours=47))
    assert report.total == 0

    clock.advance(hours=48)
    report = await lifecycle.advance_due()
    assert report.expired == 1

    expired = await lifecycle.get(r.reservation_id)
    assert expired.status == S.EXPIRED
    assert expired.expired_at == clock.now
    assert publisher.routing_keys[-1] == "reservation_expired"


@pytest.mark.asyncio
async def test_pending_request_expires_once_start_passes(lifecycle, resource):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)

    report = await lifecycle.advance_due(at(DAY1, 9))
    assert report.expired == 1
    assert (await lifecycle.get(r.reservation_id)).status == S.EXPIRED


@pytest.mark.asyncio
async def test_expired_request_frees_the_interval(lifecycle, resource):
    await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.advance_due(at(DAY1, 9))

    again = await lifecycle.request_reservation(request(at(DAY1, 10), at(DAY1, 12)), OTHER_RENTER)
    assert again.status == S.PENDING


@pytest.mark.asyncio
async def test_confirmed_reservation_activates_then_completes(lifecycle, resource, publisher):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)

    report = await lifecycle.advance_due(at(DAY1, 9))
    assert report.activated == 1
    active = await lifecycle.get(r.reservation_id)
    assert active.status == S.ACTIVE
    assert active.activated_at == at(DAY1, 9)

    report = await lifecycle.advance_due(at(DAY1, 17))
    assert report.completed == 1
    done = await lifecycle.get(r.reservation_id)
    assert done.status == S.COMPLETED
    assert done.completed_at == at(DAY1, 17)
    assert publisher.routing_keys[-1] == "reservation_completed"


@pytest.mark.asyncio
async def test_missed_window_activates_and_completes_in_one_sweep(lifecycle, resource):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)

    report = await lifecycle.advance_due(at(DAY1, 20))
    assert (report.activated, report.completed) == (1, 1)
    assert (await lifecycle.get(r.reservation_id)).status == S.COMPLETED


@pytest.mark.asyncio
async def test_sweep_is_idempotent(lifecycle, resource):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)

    await lifecycle.advance_due(at(DAY1, 10))
    report = await lifecycle.advance_due(at(DAY1, 10))
    assert report.total == 0


@pytest.mark.asyncio
async def test_transition_due_at_t_is_applied_by_first_sweep_at_or_after_t(lifecycle, resource, clock):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)
    sweeper = PollingSweeper(lifecycle, interval_seconds=60)

    clock.now = at(DAY1, 9) - timedelta(seconds=1)
    await sweeper.run_once()
    assert (await lifecycle.get(r.reservation_id)).status == S.CONFIRMED

    # next tick, one interval later
    clock.now = clock.now + timedelta(seconds=sweeper.interval_seconds)
    await sweeper.run_once()
    assert (await lifecycle.get(r.reservation_id)).status == S.ACTIVE


class CountingLifecycle:
    def __init__(self, fail_first=False):
        self.calls = 0
        self.fail_first = fail_first

    async def advance_due(self):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("database went away")


@pytest.mark.asyncio
async def test_sweeper_loop_survives_errors_and_stops_on_signal():
    fake = CountingLifecycle(fail_first=True)
    sweeper = PollingSweeper(fake, interval_seconds=0.01)
    stop = asyncio.Event()

    task = asyncio.create_task(sweeper.run(stop))
    for _ in range(100):
        if fake.calls >= 3:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert fake.calls >= 3
