# src/cryptoalerts/alerts/engine.py
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol

import structlog

from cryptoalerts.alerts.conditions import ConditionKind, Evaluation, EvaluationContext
from cryptoalerts.alerts.models import Notification, latest_ema_record
from cryptoalerts.alerts.scheduler import TickScheduler
from cryptoalerts.errors import (
    FeedUnavailable,
    InvalidSample,
    MalformedNotification,
    PersistenceConflict,
    SchedulerStartError,
)
from cryptoalerts.indicators.ema import EmaTracker
from cryptoalerts.utils.time import utc_now_s
from cryptoalerts.utils.types import PriceSample, TickReport, TriggerEvent, to_price

log = structlog.get_logger("engine")


# ---- collaborators ----

class PriceFeed(Protocol):
    async def get_price(self, symbol: str, quote: str) -> PriceSample: ...


class NotificationStore(Protocol):
    async def load_active(self) -> List[Notification]: ...
    async def save(self, n: Notification, fields: Optional[Iterable[str]] = None) -> None: ...


class Dispatcher(Protocol):
    async def emit(self, evt: TriggerEvent) -> None: ...


@dataclass(slots=True)
class EngineConfig:
    max_concurrent_markets: int = 16
    context: EvaluationContext = field(default_factory=EvaluationContext)
    # after a restart the tracker is empty: start from the stored EMA instead of the first price
    seed_ema_from_store: bool = True


class AlertEngine:
    """
    Evaluates every active notification once per tick.

    Per tick:
      1) load active notifications, drop malformed ones (flagged in the report)
      2) group by market (symbol-quote); each market is owned by one task
      3) one price fetch per market; one EMA update per market if it has
         ema_cross alerts, completed before any of them is evaluated
      4) evaluate each notification against that shared snapshot
      5) on trigger: write back only the changed fields, then emit one TriggerEvent

    Ticks are serialised, so EMA updates for a market are applied in tick order.
    Market and notification failures are counted in the TickReport and never
    abort the tick.
    """

    def __init__(
        self,
        *,
        store: NotificationStore,
        feed: PriceFeed,
        dispatcher: Dispatcher,
        tracker: Optional[EmaTracker] = None,
        cfg: Optional[EngineConfig] = None,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.store = store
        self.feed = feed
        self.dispatcher = dispatcher
        self.tracker = tracker or EmaTracker()
        self.cfg = cfg or EngineConfig()
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._scheduler: Optional[TickScheduler] = None
        self.last_report: Optional[TickReport] = None

    # ---------- lifecycle ----------

    async def start(self, interval_s: float) -> None:
        if self._scheduler is not None and self._scheduler.running:
            raise SchedulerStartError("engine already started")
        self._scheduler = TickScheduler(self.run_tick, interval_s=interval_s, clock=self._clock, name="alert-engine")
        await self._scheduler.start()

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop(timeout=timeout)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ---------- tick ----------

    async def run_tick(self, now: Optional[int] = None) -> TickReport:
        async with self._tick_lock:
            now = int(self._clock()) if now is None else int(now)
            t0 = time.perf_counter()
            report = TickReport(ts=now)
            try:
                active = await self.store.load_active()
            except Exception as e:
                report.load_failed = True
                log.error("load_active_failed", err=str(e))
                active = []

            groups = self._group(active, report)
            report.markets = len(groups)

            sem = asyncio.Semaphore(max(1, self.cfg.max_concurrent_markets))

            async def run_market(market: str, notifs: List[Notification]) -> None:
                async with sem:
                    try:
                        await self._tick_market(market, notifs, now, report)
                    except Exception as e:
                        # contained: the market is retried on the next tick
                        report.skipped += len(notifs)
                        log.exception("market_tick_failed", market=market, err=str(e))

            await asyncio.gather(*(run_market(m, ns) for m, ns in groups.items()))

            report.duration_s = time.perf_counter() - t0
            self.last_report = report
            log.info("tick_done", **report.as_log())
            return report

    def _group(self, active: Iterable[Notification], report: TickReport) -> Dict[str, List[Notification]]:
        groups: Dict[str, List[Notification]] = {}
        for n in active:
            if not n.is_active:
                continue
            try:
                n.condition
            except MalformedNotification as e:
                report.malformed.append(n.id)
                log.error("notification_malformed", id=n.id, user_id=n.user_id, reason=e.reason,
                          action="operator_attention")
                continue
            groups.setdefault(n.market, []).append(n)
        return groups

    async def _tick_market(self, market: str, notifs: List[Notification], now: int, report: TickReport) -> None:
        head = notifs[0]
        try:
            sample = await self.feed.get_price(head.symbol, head.quote)
            price = to_price(sample.price)
        except FeedUnavailable as e:
            report.feed_failures += 1
            report.skipped += len(notifs)
            log.warning("price_fetch_failed", market=market, err=e.reason, skipped=len(notifs))
            return
        except InvalidSample as e:
            report.invalid_samples += 1
            report.skipped += len(notifs)
            log.warning("price_sample_invalid", market=market, err=str(e), skipped=len(notifs))
            return

        ema: Optional[Decimal] = None
        ema_notifs = [n for n in notifs if n.kind is ConditionKind.EMA_CROSS]
        if ema_notifs:
            if self.cfg.seed_ema_from_store and not self.tracker.has(market):
                src = latest_ema_record(ema_notifs)
                self.tracker.seed(market, src.ema_cross.current_ema)
                log.info("ema_seeded_from_store", market=market, id=src.id, ema=str(src.ema_cross.current_ema))
            try:
                ema = self.tracker.update(market, price, sample.ts)
            except InvalidSample as e:
                report.invalid_samples += 1
                report.skipped += len(notifs)
                log.warning("ema_update_rejected", market=market, err=str(e))
                return

        await asyncio.gather(*(self._process(n, sample, price, ema, now, report) for n in notifs))

    async def _process(
        self,
        n: Notification,
        sample: PriceSample,
        price: Decimal,
        ema: Optional[Decimal],
        now: int,
        report: TickReport,
    ) -> None:
        result = n.evaluate(price, ema, self.cfg.context)
        report.evaluated += 1
        if not result.triggered:
            return

        updated, fields = n.apply_trigger(result, now)
        if not fields:
            return
        try:
            await self.store.save(updated, fields)
        except PersistenceConflict as e:
            report.persist_failures += 1
            log.warning("persist_conflict", id=n.id, market=n.market, reason=e.reason)
            return
        except Exception as e:
            report.persist_failures += 1
            log.warning("persist_failed", id=n.id, market=n.market, err=str(e))
            return

        report.triggered += 1
        evt = build_event(updated, result, sample, price, ema, now)
        log.info("alert_triggered", id=n.id, market=n.market, kind=evt.kind, direction=evt.direction,
                 price=str(price), ema=str(ema) if ema is not None else None)
        try:
            await self.dispatcher.emit(evt)
        except Exception as e:
            # delivery retries belong to the dispatcher
            report.dispatch_failures += 1
            log.warning("dispatch_failed", id=n.id, err=str(e))


def build_event(
    n: Notification,
    result: Evaluation,
    sample: PriceSample,
    price: Decimal,
    ema: Optional[Decimal],
    now: int,
) -> TriggerEvent:
    lower = upper = None
    if n.kind is ConditionKind.RANGE:
        lower, upper = n.range.lower, n.range.upper
    elif n.kind is ConditionKind.PERCENT:
        lower, upper = n.percent.lower, n.percent.upper
    return TriggerEvent(
        notification_id=n.id,
        user_id=n.user_id,
        symbol=n.symbol,
        quote=n.quote,
        kind=n.kind.value,
        direction=result.direction or "up",
        price=price,
        ts=int(now),
        price_ts=sample.ts,
        ema=ema if n.kind is ConditionKind.EMA_CROSS else None,
        lower=lower,
        upper=upper,
    )
