import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .errors import StaleStateError

logger = logging.getLogger(__name__)


def _lock_key(reservation_id: str) -> str:
    return f"reservation:{reservation_id}:mutex"


class LocalReservationLocks:
    """One asyncio.Lock per reservation id; serializes transitions inside this process."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, reservation_id: str) -> asyncio.Lock:
        lock = self._locks.get(reservation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[reservation_id] = lock
        return lock

    @asynccontextmanager
    async def guard(self, reservation_id: str) -> AsyncIterator[None]:
        async with self._lock(reservation_id):
            yield


class RedisReservationLocks(LocalReservationLocks):
    """
    Per-reservation mutex shared by every instance (SET NX EX).

    The local lock is taken first so one process never races itself for the
    redis key. If the key stays held past `wait_seconds` the transition is
    refused with StaleStateError. When redis itself is unreachable the local
    lock still applies.
    """

    def __init__(self, redis_client, ttl_seconds: int = 90, wait_seconds: float = 5.0, poll_seconds: float = 0.05):
        super().__init__()
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds

    async def _acquire(self, key: str, token: str) -> bool:
        deadline = time.monotonic() + self.wait_seconds
        while True:
            if await self.redis.set(key, token, nx=True, ex=self.ttl_seconds):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.poll_seconds)

    async def _release(self, key: str, token: str) -> None:
        try:
            if await self.redis.get(key) == token:
                await self.redis.delete(key)
        except Exception as e:
            logger.warning("reservation lock %s release failed: %s", key, e)

    @asynccontextmanager
    async def guard(self, reservation_id: str) -> AsyncIterator[None]:
        key = _lock_key(reservation_id)
        token = uuid.uuid4().hex
        async with self._lock(reservation_id):
            try:
                acquired = await self._acquire(key, token)
            except Exception as e:
                logger.warning("reservation lock %s unavailable, using the local lock only: %s", key, e)
                acquired = None

            if acquired is None:
                yield
                return
            if not acquired:
                raise StaleStateError(f"Reservation {reservation_id} is being changed by another request")
            try:
                yield
            finally:
                await self._release(key, token)
