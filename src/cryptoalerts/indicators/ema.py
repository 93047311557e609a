# src/cryptoalerts/indicators/ema.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Sequence

import structlog

from cryptoalerts.errors import InvalidSample
from cryptoalerts.utils.types import to_price

DEFAULT_EMA_PERIOD = 20
CENTS = Decimal("0.01")

log = structlog.get_logger("ema")


def sma(closes: Sequence, *, places: Decimal = CENTS) -> Decimal:
    """Simple average of historical closes, rounded half-up (seed for a new EMA alert)."""
    values = [to_price(c) for c in closes]
    if not values:
        raise InvalidSample("no closes to average")
    return (sum(values) / len(values)).quantize(places, rounding=ROUND_HALF_UP)


@dataclass(slots=True)
class EmaState:
    value: Decimal
    updated_at: int  # epoch seconds of the last applied sample
    samples: int = 1


class EmaTracker:
    """
    One EMA per market, k = 2/(period+1).

    First sample seeds EMA = price; later samples apply
        ema = price*k + ema*(1-k)
    Samples older than the last applied one are ignored so that updates
    stay in arrival order. The caller serialises access per market.
    """

    def __init__(self, period: int = DEFAULT_EMA_PERIOD):
        if period < 1:
            raise ValueError("EMA period must be >= 1")
        self._period = int(period)
        self._k = Decimal(2) / Decimal(self._period + 1)
        self._states: Dict[str, EmaState] = {}

    @property
    def period(self) -> int:
        return self._period

    @property
    def k(self) -> Decimal:
        return self._k

    def has(self, market: str) -> bool:
        return market in self._states

    def get(self, market: str) -> Optional[Decimal]:
        st = self._states.get(market)
        return st.value if st else None

    def seed(self, market: str, ema, ts: int = 0) -> bool:
        """Install an EMA for a market with no state yet. Returns False if state already exists."""
        value = to_price(ema)
        if market in self._states:
            return False
        self._states[market] = EmaState(value=value, updated_at=int(ts), samples=0)
        log.debug("ema_seeded", market=market, ema=str(value))
        return True

    def update(self, market: str, price, ts: int) -> Decimal:
        px = to_price(price)  # raises InvalidSample before anything is touched
        st = self._states.get(market)
        if st is None:
            self._states[market] = EmaState(value=px, updated_at=int(ts))
            return px
        if ts < st.updated_at:
            log.warning("ema_stale_sample_ignored", market=market, ts=ts, last_ts=st.updated_at)
            return st.value
        st.value = px * self._k + st.value * (1 - self._k)
        st.updated_at = int(ts)
        st.samples += 1
        return st.value
