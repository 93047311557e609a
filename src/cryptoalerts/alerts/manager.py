# src/cryptoalerts/alerts/manager.py
from __future__ import annotations

from typing import Callable, List, Optional

import structlog

from cryptoalerts.alerts.conditions import (
    ConditionKind,
    EmaCrossCondition,
    PercentCondition,
    RangeCondition,
    round_half_up,
)
from cryptoalerts.alerts.models import Notification, latest_ema_record
from cryptoalerts.errors import FeedUnavailable, InvalidSample
from cryptoalerts.indicators.ema import EmaTracker, sma
from cryptoalerts.utils.time import days_back, utc_now_s
from cryptoalerts.utils.types import market_of, to_price

log = structlog.get_logger("manager")

DEFAULT_SEED_DAYS = 20


class AlertManager:
    """
    Creating, listing and deleting a user's alerts.

    The engine only ever flips state on existing records; everything that
    creates or removes them goes through here.
    """

    def __init__(
        self,
        *,
        store,
        feed,
        tracker: Optional[EmaTracker] = None,
        default_quote: str = "USDT",
        seed_days: int = DEFAULT_SEED_DAYS,
        clock: Callable[[], float] = utc_now_s,
    ):
        self.store = store
        self.feed = feed
        self.tracker = tracker
        self.default_quote = default_quote.upper()
        self.seed_days = int(seed_days)
        self._clock = clock

    def _quote(self, quote: Optional[str]) -> str:
        return (quote or self.default_quote).upper()

    async def set_range_alert(self, user_id: str, symbol: str, lower, upper, quote: Optional[str] = None) -> Notification:
        lo = round_half_up(to_price(lower))
        hi = round_half_up(to_price(upper))
        if lo >= hi:
            raise ValueError(f"lower boundary {lo} must be below upper boundary {hi}")
        n = Notification.create(
            user_id=user_id, symbol=symbol, quote=self._quote(quote),
            condition=RangeCondition(lower=lo, upper=hi), now=int(self._clock()),
        )
        return await self.store.create(n)

    async def set_percent_alert(
        self, user_id: str, symbol: str, down_percent, up_percent, quote: Optional[str] = None
    ) -> Notification:
        down, up = to_price(down_percent), to_price(up_percent)
        if down >= 100:
            raise ValueError("down percent must be below 100")
        if down == 0 and up == 0:
            raise ValueError("at least one percent bound must be non-zero")
        q = self._quote(quote)
        sample = await self.feed.get_price(symbol, q)
        start = round_half_up(to_price(sample.price))
        cond = PercentCondition.from_start(start, down, up)
        n = Notification.create(user_id=user_id, symbol=symbol, quote=q, condition=cond, now=sample.ts)
        log.info("percent_bounds", market=n.market, start=str(start), lower=str(cond.lower), upper=str(cond.upper))
        return await self.store.create(n)

    async def set_ema_alert(self, user_id: str, symbol: str, quote: Optional[str] = None) -> Notification:
        """
        start_ema is the SMA of one close per day over `seed_days`.

        current_ema and is_above follow the EMA the engine will compare against:
        the tracker's live value for the market when it has one, otherwise the
        SMA, which then seeds the tracker. The first tick therefore reports a
        flip only after a real cross.
        """
        q = self._quote(quote)
        market = market_of(symbol, q)
        sample = await self.feed.get_price(symbol, q)
        price = to_price(sample.price)
        closes = await self.feed.get_history(symbol, q, days_back(sample.ts, self.seed_days))
        try:
            seed = sma(closes)
        except InvalidSample:
            raise FeedUnavailable(market, "no history to seed EMA") from None
        if len(closes) < self.seed_days:
            log.warning("ema_seed_short_history", market=market, got=len(closes), wanted=self.seed_days)

        live = await self._live_ema(market)
        if live is None:
            current = seed
            if self.tracker is not None:
                self.tracker.seed(market, seed, ts=sample.ts)
        else:
            current = live
            log.info("ema_alert_uses_live_ema", market=market, sma=str(seed), ema=str(live))

        cond = EmaCrossCondition(start_ema=seed, current_ema=current, is_above=current > price)
        n = Notification.create(user_id=user_id, symbol=symbol, quote=q, condition=cond, now=sample.ts)
        return await self.store.create(n)

    async def _live_ema(self, market: str):
        """Tracker EMA for the market, seeding it from stored ema alerts after a restart."""
        if self.tracker is None:
            return None
        if not self.tracker.has(market):
            stored = [
                n for n in await self.store.load_active()
                if n.market == market and n.kind is ConditionKind.EMA_CROSS
                and n.defect is None and n.ema_cross is not None
            ]
            if stored:
                src = latest_ema_record(stored)
                self.tracker.seed(market, src.ema_cross.current_ema)
                log.info("ema_seeded_from_store", market=market, id=src.id, ema=str(src.ema_cross.current_ema))
        return self.tracker.get(market)

    async def list_alerts(self, user_id: str, active_only: bool = True) -> List[Notification]:
        notifs = await self.store.list_for_user(str(user_id))
        if active_only:
            notifs = [n for n in notifs if n.is_active]
        return sorted(notifs, key=lambda n: (n.created_at, n.id))

    async def delete_alert(self, user_id: str, symbol: str, kind) -> bool:
        """Delete the user's oldest alert on `symbol` of `kind`. False when none matched."""
        kind = ConditionKind(kind)
        for n in await self.list_alerts(user_id, active_only=False):
            if n.symbol == symbol.upper() and n.kind is kind:
                await self.store.delete(n)
                return True
        return False

    async def delete_all_alerts(self, user_id: str) -> int:
        notifs = await self.store.list_for_user(str(user_id))
        for n in notifs:
            await self.store.delete(n)
        log.info("alerts_deleted", user_id=user_id, count=len(notifs))
        return len(notifs)

