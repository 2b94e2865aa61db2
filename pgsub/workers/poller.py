from __future__ import annotations

import asyncio
import time
from collections.abc import Callable


class PollTimer:
    """Fixed-rate ticker that backs up notifications.

    Ticks fall on ``start + k * interval`` regardless of how often the caller
    is woken by other sources, so cancelling a pending wait never pushes the
    next tick further out. Missed ticks are skipped rather than replayed.
    """

    def __init__(self, *, interval_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        if interval_ms <= 0:
            raise ValueError("poll interval must be positive")
        self.interval_seconds = interval_ms / 1000
        self._clock = clock
        self._next_deadline = clock() + self.interval_seconds
        self.ticks_total = 0

    def seconds_until_next_tick(self) -> float:
        return max(self._next_deadline - self._clock(), 0.0)

    async def wait_next_tick(self) -> None:
        delay = self.seconds_until_next_tick()
        if delay > 0:
            await asyncio.sleep(delay)
        self._advance()

    def _advance(self) -> None:
        now = self._clock()
        self._next_deadline += self.interval_seconds
        while self._next_deadline <= now:
            self._next_deadline += self.interval_seconds
        self.ticks_total += 1
