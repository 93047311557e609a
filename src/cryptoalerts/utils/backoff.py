from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass


def jitter(v: float, *, ratio: float = 0.2) -> float:
    """Scale v by a random factor in [1-ratio, 1+ratio]."""
    return v * (1.0 - ratio + 2.0 * ratio * random.random())


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """
    Attempts per call and the waits between them.
    Waits double from initial_s up to cap_s and are jittered.
    """
    attempts: int = 3
    initial_s: float = 0.25
    cap_s: float = 30.0
    jitter_ratio: float = 0.2

    def base_delay(self, attempt: int) -> float:
        """Un-jittered wait after failed attempt `attempt` (1-based)."""
        return min(self.initial_s * (2.0 ** max(0, attempt - 1)), self.cap_s)

    def delay(self, attempt: int) -> float:
        if attempt >= self.attempts:
            return 0.0
        return jitter(self.base_delay(attempt), ratio=self.jitter_ratio)

    async def wait(self, attempt: int) -> None:
        d = self.delay(attempt)
        if d > 0:
            await asyncio.sleep(d)
