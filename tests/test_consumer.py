import json
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from conftest import DAY1, OWNER, RENTER, at, request
from reservation_service.commands import RaiseDispute
from reservation_service.consumer import DomainEventConsumer, resource_from_payload
from reservation_service.domain import DisputeReason, ReservationStatus
from reservation_service.errors import NotFoundError, PaymentError


def envelope(event_type, data, event_id="evt-1"):
    return {"event_id": event_id, "event_type": event_type, "occurred_at": "2026-03-02T08:00:00+00:00", "data": data}


RESOURCE_DATA = {
    "resource_id": "res-9",
    "owner_id": "owner-9",
    "pricing": {"hourly": "8.5", "daily": 40, "deposit": "25", "currency": "EUR"},
    "delivery": {"available": True, "fee": "12"},
    "instant_booking": True,
}


def test_resource_from_payload_parses_nested_terms():
    resource = resource_from_payload({**RESOURCE_DATA, "deleted_at": "2026-03-01T10:00:00Z"})

    assert resource.pricing.hourly == Decimal("8.5")
    assert resource.pricing.daily == Decimal("40")
    assert resource.pricing.weekly is None
    assert resource.pricing.currency == "EUR"
    assert resource.delivery.fee == Decimal("12")
    assert resource.min_rental_hours == 1
    assert resource.max_rental_hours == 720
    assert resource.instant_booking is True
    assert resource.is_deleted


@pytest.mark.asyncio
async def test_upsert_and_delete_resource(lifecycle, store, fake_redis):
    consumer = DomainEventConsumer(lifecycle, fake_redis)

    await consumer.handle_payload(envelope("resource.upserted", RESOURCE_DATA, "evt-1"))
    assert (await store.get_resource("res-9")).owner_id == "owner-9"

    await consumer.handle_payload(envelope("resource.deleted", {"resource_id": "res-9"}, "evt-2"))
    deleted = await store.get_resource("res-9")
    assert deleted.deleted_at == lifecycle.clock()

    with pytest.raises(NotFoundError):
        await lifecycle.quote("res-9", at(DAY1, 9), at(DAY1, 10))


@pytest.mark.asyncio
async def test_duplicate_events_are_applied_once(lifecycle, store, fake_redis):
    consumer = DomainEventConsumer(lifecycle, fake_redis)

    await consumer.handle_payload(envelope("resource.upserted", RESOURCE_DATA, "evt-1"))
    await consumer.handle_payload(
        envelope("resource.upserted", {**RESOURCE_DATA, "owner_id": "someone-else"}, "evt-1")
    )

    assert (await store.get_resource("res-9")).owner_id == "owner-9"
    assert fake_redis.ttl["processed_event:evt-1"] == 3600


@pytest.mark.asyncio
async def test_dispute_resolution_event_resolves_dispute(lifecycle, resource, fake_redis, payments):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)
    await lifecycle.dispute(r.reservation_id, RENTER, RaiseDispute(reason=DisputeReason.NO_SHOW))

    consumer = DomainEventConsumer(lifecycle, fake_redis)
    await consumer.handle_payload(
        envelope(
            "dispute.resolved",
            {"reservation_id": r.reservation_id, "outcome": "cancelled", "refund_amount": "55.00"},
        )
    )

    resolved = await lifecycle.get(r.reservation_id)
    assert resolved.status == ReservationStatus.CANCELLED
    assert resolved.refund.amount == Decimal("55.00")
    assert payments.refunds == [("pay_1", Decimal("55.00"))]


@pytest.mark.asyncio
async def test_invalid_events_are_dropped(lifecycle, store, fake_redis):
    consumer = DomainEventConsumer(lifecycle, fake_redis)

    await consumer.handle_payload(envelope("resource.upserted", {"owner_id": "x"}, "evt-a"))
    await consumer.handle_payload(envelope("dispute.resolved", {"reservation_id": "nope", "outcome": "completed"}, "evt-b"))
    await consumer.handle_payload(envelope("something.else", {}, "evt-c"))
    await consumer.handle_payload({"event_type": "resource.upserted", "data": RESOURCE_DATA})

    with pytest.raises(NotFoundError):
        await store.get_resource("res-9")
    assert "processed_event:evt-c" not in fake_redis.data


@pytest.mark.asyncio
async def test_failed_dispute_refund_is_redelivered(lifecycle, resource, fake_redis, payments):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)
    await lifecycle.dispute(r.reservation_id, RENTER, RaiseDispute(reason=DisputeReason.DAMAGE))

    consumer = DomainEventConsumer(lifecycle, fake_redis)
    event = envelope(
        "dispute.resolved",
        {"reservation_id": r.reservation_id, "outcome": "cancelled", "refund_amount": "50.00"},
        "evt-d1",
    )

    payments.fail_refund = True
    with pytest.raises(PaymentError):
        await consumer.handle_payload(event)
    assert "processed_event:evt-d1" not in fake_redis.data
    assert (await lifecycle.get(r.reservation_id)).status == ReservationStatus.DISPUTED

    payments.fail_refund = False
    await consumer.handle_payload(event)

    resolved = await lifecycle.get(r.reservation_id)
    assert resolved.status == ReservationStatus.CANCELLED
    assert payments.refunds == [("pay_1", Decimal("50.00"))]
    assert fake_redis.data["processed_event:evt-d1"] == "1"


class FakeMessage:
    def __init__(self, payload):
        self.body = json.dumps(payload).encode("utf-8")
        self.message_id = payload.get("event_id")
        self.outcome = None

    @asynccontextmanager
    async def process(self, requeue=False):
        try:
            yield
        except Exception:
            self.outcome = "requeued" if requeue else "rejected"
            raise
        self.outcome = "acked"


@pytest.mark.asyncio
async def test_message_with_transient_failure_is_requeued(lifecycle, resource, fake_redis, payments):
    r = await lifecycle.request_reservation(request(at(DAY1, 9), at(DAY1, 17)), RENTER)
    await lifecycle.approve(r.reservation_id, OWNER)
    await lifecycle.dispute(r.reservation_id, OWNER, RaiseDispute(reason=DisputeReason.NO_SHOW))
    consumer = DomainEventConsumer(lifecycle, fake_redis)

    payments.fail_refund = True
    failing = FakeMessage(
        envelope("dispute.resolved", {"reservation_id": r.reservation_id, "outcome": "cancelled", "refund_amount": "5"})
    )
    with pytest.raises(PaymentError):
        await consumer.handle_message(failing)
    assert failing.outcome == "requeued"

    bad = FakeMessage(envelope("dispute.resolved", {"reservation_id": "nope", "outcome": "completed"}, "evt-2"))
    await consumer.handle_message(bad)
    assert bad.outcome == "acked"
