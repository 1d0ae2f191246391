import dataclasses
import json
import logging
from decimal import Decimal, InvalidOperation

import aio_pika
from aio_pika import ExchangeType
from dateutil import parser

from .commands import ResolveDispute
from .domain import SYSTEM_ACTOR, DeliveryTerms, PricingTiers, ReservationStatus, Resource, as_utc
from .errors import PaymentError, ReservationError, StaleStateError
from .rabbitmq import EXCHANGE_NAME

logger = logging.getLogger(__name__)

QUEUE_NAME = "reservation_service_domain_events"
ROUTING_KEYS = ["resource.upserted", "resource.deleted", "dispute.resolved"]

# transient failures; the event is released and redelivered
RETRYABLE_ERRORS = (PaymentError, StaleStateError)

IDEMPOTENCY_TTL_SECONDS = 60 * 60  # 1 hour


def _money(value, default=None):
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value!r}")


def resource_from_payload(data: dict) -> Resource:
    pricing = data.get("pricing") or {}
    delivery = data.get("delivery") or {}
    deleted_at = data.get("deleted_at")
    return Resource(
        resource_id=str(data["resource_id"]),
        owner_id=str(data["owner_id"]),
        pricing=PricingTiers(
            hourly=_money(pricing.get("hourly")),
            daily=_money(pricing.get("daily")),
            weekly=_money(pricing.get("weekly")),
            monthly=_money(pricing.get("monthly")),
            deposit=_money(pricing.get("deposit"), Decimal("0.00")),
            currency=pricing.get("currency") or "USD",
        ),
        delivery=DeliveryTerms(
            available=bool(delivery.get("available", False)),
            fee=_money(delivery.get("fee"), Decimal("0.00")),
        ),
        min_rental_hours=int(data.get("min_rental_hours") or 1),
        max_rental_hours=int(data.get("max_rental_hours") or 720),
        advance_booking_days=int(data.get("advance_booking_days") or 30),
        instant_booking=bool(data.get("instant_booking", False)),
        deleted_at=as_utc(parser.isoparse(deleted_at)) if deleted_at else None,
    )


def _processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


class DomainEventConsumer:
    """Keeps the resource catalog copy in sync and applies dispute decisions."""

    def __init__(self, lifecycle, redis_client):
        self.lifecycle = lifecycle
        self.redis = redis_client

    async def _already_processed(self, event_id: str) -> bool:
        key = _processed_key(event_id)
        if await self.redis.get(key):
            return True
        await self.redis.set(key, "1", ex=IDEMPOTENCY_TTL_SECONDS)
        return False

    async def handle_payload(self, payload: dict) -> None:
        event_id = payload.get("event_id")
        event_type = payload.get("event_type")
        data = payload.get("data") or {}

        if not event_id or event_type not in ROUTING_KEYS:
            return

        if await self._already_processed(event_id):
            return

        try:
            await self._apply(event_type, data)
        except RETRYABLE_ERRORS as e:
            await self._release(event_id)
            logger.error("event %s (%s) failed, left for redelivery: %s", event_id, event_type, e)
            raise
        except (ReservationError, KeyError, ValueError) as e:
            logger.warning("event %s (%s) rejected: %s", event_id, event_type, e)
        except Exception:
            await self._release(event_id)
            logger.exception("event %s (%s) failed, left for redelivery", event_id, event_type)
            raise

    async def _release(self, event_id: str) -> None:
        await self.redis.delete(_processed_key(event_id))

    async def _apply(self, event_type: str, data: dict) -> None:
        if event_type == "resource.upserted":
            resource = resource_from_payload(data)
            await self.lifecycle.store.save_resource(resource)
            logger.info("resource %s synced from catalog", resource.resource_id)
            return

        if event_type == "resource.deleted":
            resource_id = data.get("resource_id")
            if not resource_id:
                return
            resource = await self.lifecycle.store.get_resource(resource_id)
            deleted_at = data.get("deleted_at")
            when = as_utc(parser.isoparse(deleted_at)) if deleted_at else self.lifecycle.clock()
            await self.lifecycle.store.save_resource(dataclasses.replace(resource, deleted_at=when))
            logger.info("resource %s soft-deleted", resource_id)
            return

        if event_type == "dispute.resolved":
            reservation_id = data.get("reservation_id")
            outcome = data.get("outcome")
            if not reservation_id or not outcome:
                return
            await self.lifecycle.resolve_dispute(
                reservation_id,
                SYSTEM_ACTOR,
                ResolveDispute(
                    outcome=ReservationStatus(outcome),
                    refund_amount=_money(data.get("refund_amount"), Decimal("0.00")),
                    decision=data.get("decision"),
                ),
            )
            return

    async def handle_message(self, message: aio_pika.IncomingMessage):
        async with message.process(requeue=True):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("dropping undecodable message %s", message.message_id)
                return
            await self.handle_payload(payload)

    async def start(self, rabbit_url: str):
        conn = await aio_pika.connect_robust(rabbit_url)
        channel = await conn.channel()
        await channel.set_qos(prefetch_count=50)

        exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
        queue = await channel.declare_queue(QUEUE_NAME, durable=True)

        for rk in ROUTING_KEYS:
            await queue.bind(exchange, routing_key=rk)

        await queue.consume(self.handle_message)
        logger.info("[reservation-service] domain event consumer started")
        return conn
