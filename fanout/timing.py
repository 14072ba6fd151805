import asyncio
import random
import time
from typing import Optional


def random_delay(min_seconds: float, max_seconds: float, rng: Optional[random.Random] = None) -> float:
    """
    Uniform wait in [min_seconds, max_seconds]. A reversed range is swapped.
    """
    rng = rng or random
    if max_seconds < min_seconds:
        min_seconds, max_seconds = max_seconds, min_seconds
    return rng.uniform(min_seconds, max_seconds)


def jitter(spread_seconds: float, rng: Optional[random.Random] = None) -> float:
    """Non-negative jitter in [0, spread_seconds]."""
    if spread_seconds <= 0:
        return 0.0
    rng = rng or random
    return rng.uniform(0, spread_seconds)


class Sleeper:
    """
    Clock and sleep used by every component that waits.

    Tests swap in a recording subclass so nothing waits on real time.
    """

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


class Temporizer:
    """
    Inserts a randomized pause before every operation except the first one it
    gates. One instance spans a whole batch so the first-transfer exemption
    applies once per batch, not once per branch.
    """

    def __init__(
        self,
        sleeper: Sleeper,
        min_seconds: float,
        max_seconds: float,
        rng: Optional[random.Random] = None,
    ):
        self.sleeper = sleeper
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self.rng = rng
        self.gated = 0

    async def wait_turn(self) -> float:
        self.gated += 1
        if self.gated == 1 or self.max_seconds <= 0:
            return 0.0
        delay = random_delay(self.min_seconds, self.max_seconds, self.rng)
        await self.sleeper.sleep(delay)
        return delay
