"""Bounded exponential backoff shared by action retries and gate polling."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass(frozen=True)
class Backoff:
    """Delay ``initial * multiplier ** attempt``, capped at ``maximum``."""

    initial: float
    multiplier: float = 2.0
    maximum: float | None = None

    def delay(self, attempt: int) -> float:
        """Delay before the retry following ``attempt`` (0-based).

        The exponent stops growing once the cap is reached, so long polls
        never overflow.
        """
        if self.initial <= 0:
            return 0.0
        if self.maximum is not None:
            if self.initial >= self.maximum:
                return self.maximum
            if self.multiplier > 1:
                attempt = min(attempt, math.ceil(math.log(self.maximum / self.initial, self.multiplier)))
            return min(self.initial * (self.multiplier ** attempt), self.maximum)

        try:
            return self.initial * (self.multiplier ** attempt)
        except OverflowError:
            return math.inf


async def default_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def default_clock() -> float:
    return time.monotonic()
