import asyncio
import logging
import os

from fastapi import Depends, FastAPI, Request

from .config import RABBIT_URL, RESERVATION_DB, EngineSettings
from .consumer import DomainEventConsumer
from .db import get_engine, get_session
from .domain import Actor
from .lifecycle import ReservationLifecycle
from .locks import LocalReservationLocks, RedisReservationLocks
from .middleware import RequestLoggingMiddleware
from .notifications import EventNotifier
from .payments import HttpPaymentGateway
from .rabbitmq import publisher
from .rbac import get_actor, require_role
from .redis_client import redis_client
from .routes import router
from .scheduler import PollingSweeper
from .sql_store import SqlAlchemyReservationStore
from .store import InMemoryReservationStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("reservation_service")

OPENAPI_TAGS = [
    {"name": "System", "description": "Operational endpoints (health, breakers)."},
]

app = FastAPI(title="Reservation Service", openapi_tags=OPENAPI_TAGS)
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_engine = None
_consumer_conn = None
_sweeper_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


def build_store():
    global _engine
    if RESERVATION_DB:
        _engine = get_engine(RESERVATION_DB)
        return SqlAlchemyReservationStore(get_session(_engine))
    logger.warning("[reservation-service] RESERVATION_DB not set, using the in-memory store")
    return InMemoryReservationStore()


def build_locks():
    # several instances may share one database
    if RESERVATION_DB:
        return RedisReservationLocks(redis_client)
    return LocalReservationLocks()


@app.get("/health", tags=["System"])
async def health():
    return {"status": "ok", "service": "reservation-service"}


@app.get("/system/breakers", tags=["System"])
async def breaker_status(request: Request, actor: Actor = Depends(get_actor)):
    require_role(actor, ["admin"])
    return await request.app.state.lifecycle.payments.breaker.status()


@app.on_event("startup")
async def startup():
    global _consumer_conn, _sweeper_task, _stop_event

    settings = EngineSettings.from_env()
    lifecycle = ReservationLifecycle(
        store=build_store(),
        payments=HttpPaymentGateway(),
        notifier=EventNotifier(publisher),
        settings=settings,
        locks=build_locks(),
    )
    app.state.lifecycle = lifecycle

    try:
        await publisher.connect()
    except Exception:
        # publish() retries the connection lazily
        pass

    if RABBIT_URL:
        try:
            _consumer_conn = await DomainEventConsumer(lifecycle, redis_client).start(RABBIT_URL)
        except Exception as e:
            logger.warning("[reservation-service] domain event consumer not started: %s", e)

    _stop_event = asyncio.Event()
    sweeper = PollingSweeper(lifecycle, interval_seconds=settings.sweep_interval_seconds)
    _sweeper_task = asyncio.create_task(sweeper.run(_stop_event))
    logger.info(
        "[reservation-service] started (bounds=%s, sweep every %ss)",
        settings.conflict_bounds,
        settings.sweep_interval_seconds,
    )


@app.on_event("shutdown")
async def shutdown():
    global _consumer_conn, _sweeper_task

    if _stop_event:
        _stop_event.set()
    if _sweeper_task:
        try:
            await asyncio.wait_for(_sweeper_task, timeout=5)
        except asyncio.TimeoutError:
            _sweeper_task.cancel()
        _sweeper_task = None

    try:
        await publisher.close()
    except Exception as e:
        logger.warning("[reservation-service] publisher close failed: %s", e)

    try:
        if _consumer_conn and not _consumer_conn.is_closed:
            await _consumer_conn.close()
    except Exception as e:
        logger.warning("[reservation-service] consumer close failed: %s", e)
    _consumer_conn = None

    if _engine is not None:
        await _engine.dispose()
