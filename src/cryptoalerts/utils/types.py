from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from cryptoalerts.errors import InvalidSample

# ---- price primitives ----

def to_price(value) -> Decimal:
    """
    Coerce a feed value (str/int/float/Decimal) into a Decimal price.
    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    Raises InvalidSample for non-numeric, non-finite or negative input.
    """
    if isinstance(value, bool):
        raise InvalidSample(f"not a price: {value!r}")
    try:
        if isinstance(value, Decimal):
            px = value
        elif isinstance(value, float):
            px = Decimal(repr(value))
        else:
            px = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidSample(f"not a price: {value!r}") from None
    if not px.is_finite():
        raise InvalidSample(f"non-finite price: {value!r}")
    if px < 0:
        raise InvalidSample(f"negative price: {value!r}")
    return px


def market_of(symbol: str, quote: str) -> str:
    """Market key used for grouping, EMA state and feed lookups, e.g. BTC-USDT."""
    return f"{symbol.upper()}-{quote.upper()}"


@dataclass(slots=True, frozen=True)
class PriceSample:
    symbol: str
    quote: str
    price: Decimal
    ts: int  # epoch seconds

    @property
    def market(self) -> str:
        return market_of(self.symbol, self.quote)


# ---- alerting domain ----

TriggerKind = Literal["range", "percent", "ema_cross"]
Direction = Literal["up", "down"]


@dataclass(slots=True, frozen=True)
class TriggerEvent:
    """One qualifying transition of one notification."""
    notification_id: str
    user_id: str
    symbol: str
    quote: str
    kind: TriggerKind
    direction: Direction
    price: Decimal
    ts: int                          # tick time (epoch seconds)
    price_ts: Optional[int] = None   # feed timestamp of the price
    ema: Optional[Decimal] = None    # ema_cross only
    lower: Optional[Decimal] = None  # range/percent only
    upper: Optional[Decimal] = None

    @property
    def market(self) -> str:
        return market_of(self.symbol, self.quote)


@dataclass(slots=True)
class TickReport:
    ts: int
    markets: int = 0
    evaluated: int = 0
    triggered: int = 0
    skipped: int = 0               # notifications not evaluated (feed/sample failures)
    feed_failures: int = 0         # markets
    invalid_samples: int = 0       # markets
    persist_failures: int = 0      # notifications
    dispatch_failures: int = 0     # notifications
    malformed: list[str] = field(default_factory=list)  # ids flagged for operator attention
    load_failed: bool = False
    duration_s: float = 0.0

    @property
    def failed(self) -> int:
        return self.skipped + self.persist_failures + self.dispatch_failures + len(self.malformed)

    def as_log(self) -> dict:
        return {
            "ts": self.ts,
            "markets": self.markets,
            "evaluated": self.evaluated,
            "triggered": self.triggered,
            "failed": self.failed,
            "skipped": self.skipped,
            "feed_failures": self.feed_failures,
            "persist_failures": self.persist_failures,
            "dispatch_failures": self.dispatch_failures,
            "malformed": len(self.malformed),
            "load_failed": self.load_failed,
            "duration_s": round(self.duration_s, 3),
        }
