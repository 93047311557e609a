# src/cryptoalerts/alerts/scheduler.py
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from cryptoalerts.errors import SchedulerStartError
from cryptoalerts.utils.time import utc_now_s
from cryptoalerts.utils.types import TickReport

log = structlog.get_logger("scheduler")

TickFn = Callable[[int], Awaitable[TickReport]]


class TickScheduler:
    """
    Fixed-interval driver for engine ticks.

    - Ticks never overlap: the next one is scheduled only after the current
      one returns. Deadlines that passed while a tick ran are dropped, not
      replayed in a burst.
    - stop() lets an in-flight tick finish, then no further tick starts.
      A timeout turns the wait into a cancellation.
    - A tick that raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        tick_fn: TickFn,
        *,
        interval_s: float,
        clock: Callable[[], float] = utc_now_s,
        name: str = "alert-ticks",
    ):
        self.tick_fn = tick_fn
        self.interval_s = float(interval_s)
        self._clock = clock
        self._name = name
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._in_tick = False

        self.ticks_run: int = 0
        self.ticks_failed: int = 0
        self.ticks_missed: int = 0
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            raise SchedulerStartError(f"{self._name} already running")
        if self.interval_s <= 0:
            raise SchedulerStartError(f"interval must be positive, got {self.interval_s}")
        self._stop.clear()
        try:
            self._task = asyncio.create_task(self._loop(), name=self._name)
        except RuntimeError as e:
            raise SchedulerStartError(str(e)) from e
        log.info("scheduler_started", name=self._name, interval_s=self.interval_s)

    async def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("scheduler_stop_timeout", name=self._name, in_tick=self._in_tick)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
        log.info("scheduler_stopped", name=self._name, ticks=self.ticks_run)

    async def _loop(self) -> None:
        next_at = self._clock()
        while not self._stop.is_set():
            now = self._clock()
            self._in_tick = True
            try:
                self.last_report = await self.tick_fn(int(now))
                self.ticks_run += 1
            except Exception as e:
                self.ticks_failed += 1
                log.exception("tick_failed", name=self._name, err=str(e))
            finally:
                self._in_tick = False

            next_at += self.interval_s
            after = self._clock()
            if after > next_at:
                missed = int((after - next_at) // self.interval_s) + 1
                self.ticks_missed += missed
                log.warning("tick_overrun", name=self._name, missed=missed)
                next_at += missed * self.interval_s
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, next_at - self._clock()))
            except asyncio.TimeoutError:
                pass
