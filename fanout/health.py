import asyncio
import time
from typing import Awaitable, Callable, Optional

from fanout.config import settings
from fanout.logging_config import get_logger


logger = get_logger(__name__)


class HealthState:
    """
    Cached "external API is warm" marker shared by every gateway call.

    ``ensure`` runs the warm-up at most once at a time: callers that arrive
    while a warm-up is running await the same task instead of probing again.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.health_ttl_seconds
        self._clock = clock or time.monotonic
        self.last_ok_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None
        self.warmups_started = 0

    def is_warm(self) -> bool:
        if self.last_ok_at is None:
            return False
        return self._clock() - self.last_ok_at < self.ttl_seconds

    def mark_warm(self) -> None:
        self.last_ok_at = self._clock()

    def invalidate(self) -> None:
        if self.last_ok_at is not None:
            logger.info("Health state invalidated after %.1fs", self._clock() - self.last_ok_at)
        self.last_ok_at = None

    @property
    def warming(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def ensure(self, warm_up: Callable[[], Awaitable[None]], force: bool = False) -> None:
        if not force and self.is_warm():
            return
        if not self.warming:
            self.warmups_started += 1
            self._inflight = asyncio.ensure_future(self._run(warm_up))
        await self._inflight

    async def _run(self, warm_up: Callable[[], Awaitable[None]]) -> None:
        try:
            await warm_up()
        except BaseException:
            self.invalidate()
            raise
