from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

log = structlog.get_logger("notify_queue")


@dataclass(slots=True)
class QueueStats:
    accepted: int = 0
    dropped: int = 0
    delivered: int = 0
    high_water: int = 0


class NotifyQueue:
    """
    Bounded hand-off between the engine and a chat transport.

    The engine side never waits: a full queue rejects the event and the
    caller reports it as a dispatch failure. The transport side awaits get().
    """

    def __init__(self, maxsize: int = 2000):
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.stats = QueueStats()

    def try_put(self, evt) -> bool:
        try:
            self._q.put_nowait(evt)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            log.warning("notify_queue_full", maxsize=self._q.maxsize, dropped=self.stats.dropped,
                        id=getattr(evt, "notification_id", None))
            return False
        self.stats.accepted += 1
        self.stats.high_water = max(self.stats.high_water, self._q.qsize())
        return True

    async def get(self):
        item = await self._q.get()
        self.stats.delivered += 1
        return item

    def qsize(self) -> int:
        return self._q.qsize()
