import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class TransitionScheduler(ABC):
    """
    Drives time-based transitions (pending->expired, confirmed->active,
    active->completed). The lifecycle only exposes `advance_due(now)`; a
    push-based scheduler can replace polling without touching it.
    """

    @abstractmethod
    async def run(self, stop_event: asyncio.Event) -> None: ...


class PollingSweeper(TransitionScheduler):
    """
    Calls `lifecycle.advance_due()` every `interval_seconds`.

    Staleness bound: a transition that becomes due at time T is applied by
    the first sweep at or after T, i.e. no later than T + interval_seconds
    (plus the duration of one sweep).
    """

    def __init__(self, lifecycle, interval_seconds: float = 60.0):
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds

    async def run_once(self):
        return await self.lifecycle.advance_due()

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                # keep the loop alive; the next tick retries
                logger.exception("[reservation-service] sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
