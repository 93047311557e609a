# src/cryptoalerts/alerts/notifiers.py
from __future__ import annotations

from typing import Callable, Optional, Sequence

import structlog

from cryptoalerts.errors import DispatchError
from cryptoalerts.notify.queue import NotifyQueue
from cryptoalerts.utils.types import TriggerEvent

log = structlog.get_logger("notifier")


class ConsoleDispatcher:
    def __init__(self, format_fn: Optional[Callable[[TriggerEvent], str]] = None):
        self._format_fn = format_fn

    async def emit(self, evt: TriggerEvent) -> None:
        if self._format_fn:
            try:
                print(self._format_fn(evt), flush=True)
                return
            except Exception as e:
                log.warning("console_format_failed", err=str(e))
        # fallback (raw)
        print(f"[ALERT] {evt.market} {evt.kind} {evt.direction} price={evt.price} "
              f"id={evt.notification_id} user={evt.user_id}", flush=True)


class QueueDispatcher:
    """Hands events to a NotifyQueue drained by a transport worker; never blocks the tick."""

    def __init__(self, queue: NotifyQueue):
        self.queue = queue

    async def emit(self, evt: TriggerEvent) -> None:
        if not self.queue.try_put(evt):
            raise DispatchError(f"notify queue full, dropped {evt.notification_id}")


class FanoutDispatcher:
    """
    Emits to every delivery target, then to the echo targets.

    Delivery targets carry the event to its owner: if any of them fails the
    emit raises DispatchError, after the others have still been tried.
    Echo targets (console mirror) are best effort and only logged on failure.
    """

    def __init__(self, targets: Sequence, echo: Sequence = ()):
        self.targets = list(targets)
        self.echo = list(echo)

    async def emit(self, evt: TriggerEvent) -> None:
        failed = []
        for t in self.targets:
            try:
                await t.emit(evt)
            except Exception as e:
                failed.append(e)
                log.warning("dispatch_target_failed", target=type(t).__name__, id=evt.notification_id, err=str(e))
        for t in self.echo:
            try:
                await t.emit(evt)
            except Exception as e:
                log.warning("dispatch_echo_failed", target=type(t).__name__, err=str(e))
        if failed:
            raise DispatchError(
                f"{len(failed)} of {len(self.targets)} delivery targets failed for {evt.notification_id}"
            ) from failed[-1]
