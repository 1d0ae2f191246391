import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from reservation_service.commands import RequestReservation
from reservation_service.config import EngineSettings
from reservation_service.domain import Actor, DeliveryTerms, PricingTiers, Resource
from reservation_service.errors import PaymentError
from reservation_service.lifecycle import ReservationLifecycle
from reservation_service.notifications import EventNotifier
from reservation_service.store import InMemoryReservationStore

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
DAY1 = datetime(2026, 3, 3, tzinfo=timezone.utc)

OWNER = Actor(user_id="owner-1")
RENTER = Actor(user_id="renter-1")
OTHER_RENTER = Actor(user_id="renter-2")
STRANGER = Actor(user_id="stranger")
ADMIN = Actor(user_id="admin-1", roles=frozenset({"admin"}))


def at(day: datetime, hour: int) -> datetime:
    return day + timedelta(hours=hour)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePaymentGateway:
    def __init__(self):
        self.authorized: list[tuple[Decimal, str, str]] = []
        self.captured: list[str] = []
        self.refunds: list[tuple[str, Decimal]] = []
        self.fail_authorize = False
        self.fail_refund = False
        self.refund_keys: list[str | None] = []
        self.refund_delay = 0.0

    async def authorize(self, amount, currency, payer):
        if self.fail_authorize:
            raise PaymentError("card declined")
        self.authorized.append((amount, currency, payer))
        return f"pay_{len(self.authorized)}"

    async def capture(self, payment_ref):
        self.captured.append(payment_ref)

    async def refund(self, payment_ref, amount, idempotency_key=None):
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.fail_refund:
            raise PaymentError("refund rejected")
        self.refunds.append((payment_ref, amount))
        self.refund_keys.append(idempotency_key)
        return f"rf_{len(self.refunds)}"


class FakePublisher:
    def __init__(self):
        self.published: list[tuple[str, str]] = []

    async def publish(self, routing_key: str, message_body: str):
        self.published.append((routing_key, message_body))

    @property
    def routing_keys(self) -> list[str]:
        return [rk for rk, _ in self.published]


class _FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, key, value):
        self.ops.append(("set", key, value))

    def delete(self, key):
        self.ops.append(("delete", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    async def execute(self):
        for op, key, *args in self.ops:
            await getattr(self.redis, op)(key, *args)
        self.ops = []


class FakeRedis:
    """Just enough of redis.asyncio for the breaker, the locks and the consumer."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttl: dict[str, int] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttl[key] = ex
        return True

    async def incr(self, key):
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key, seconds):
        self.ttl[key] = seconds
        return True

    async def delete(self, key):
        self.data.pop(key, None)
        self.ttl.pop(key, None)
        return 1

    def pipeline(self):
        return _FakePipeline(self)


def make_resource(**overrides) -> Resource:
    values = dict(
        resource_id="res-1",
        owner_id=OWNER.user_id,
        pricing=PricingTiers(hourly=Decimal("10"), daily=Decimal("50"), weekly=Decimal("300")),
        delivery=DeliveryTerms(available=True, fee=Decimal("15")),
    )
    values.update(overrides)
    return Resource(**values)


def request(start: datetime, end: datetime, resource_id: str = "res-1", **kwargs) -> RequestReservation:
    return RequestReservation(resource_id=resource_id, start=start, end=end, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryReservationStore()


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def lifecycle(store, payments, publisher, settings, clock):
    return ReservationLifecycle(
        store=store,
        payments=payments,
        notifier=EventNotifier(publisher, timeout=1.0),
        settings=settings,
        clock=clock,
    )


@pytest.fixture
async def resource(store):
    return await store.save_resource(make_resource())
