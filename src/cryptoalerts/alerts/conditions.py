# src/cryptoalerts/alerts/conditions.py
from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import NamedTuple, Optional, Union

from cryptoalerts.utils.types import Direction, to_price

CENTS = Decimal("0.01")
HUNDRED = Decimal(100)


class ConditionKind(str, Enum):
    RANGE = "range"
    PERCENT = "percent"
    EMA_CROSS = "ema_cross"

    @property
    def terminal(self) -> bool:
        """Range/Percent deactivate on trigger; EmaCross keeps evaluating forever."""
        return self is not ConditionKind.EMA_CROSS


def round_half_up(value: Decimal, places: Decimal = CENTS) -> Decimal:
    return value.quantize(places, rounding=ROUND_HALF_UP)


@dataclass(slots=True, frozen=True)
class RangeCondition:
    lower: Decimal
    upper: Decimal

    kind = ConditionKind.RANGE


@dataclass(slots=True, frozen=True)
class PercentCondition:
    start_price: Decimal
    down_percent: Decimal
    up_percent: Decimal
    lower: Decimal
    upper: Decimal

    kind = ConditionKind.PERCENT

    @classmethod
    def from_start(cls, start_price, down_percent, up_percent) -> "PercentCondition":
        """Bounds are resolved once here and never recomputed."""
        start = to_price(start_price)
        down = to_price(down_percent)
        up = to_price(up_percent)
        return cls(
            start_price=start,
            down_percent=down,
            up_percent=up,
            lower=round_half_up(start * (1 - down / HUNDRED)),
            upper=round_half_up(start * (1 + up / HUNDRED)),
        )


@dataclass(slots=True, frozen=True)
class EmaCrossCondition:
    start_ema: Decimal
    current_ema: Decimal
    is_above: bool  # EMA > price at the last flip (or at creation)

    kind = ConditionKind.EMA_CROSS


Condition = Union[RangeCondition, PercentCondition, EmaCrossCondition]


@dataclass(slots=True, frozen=True)
class EvaluationContext:
    """
    Per-call evaluation settings (replaces any process-wide "current currency").
    round_price: quantize the live price to `places` before boundary tests.
    Off by default: only the bounds are rounded.
    """
    round_price: bool = False
    places: Decimal = CENTS


DEFAULT_CONTEXT = EvaluationContext()


class Evaluation(NamedTuple):
    triggered: bool
    state: Condition
    direction: Optional[Direction] = None


def _crossed_bounds(lower: Decimal, upper: Decimal, price: Decimal) -> Optional[Direction]:
    # inclusive on both sides; upper checked first like the bot did
    if price >= upper:
        return "up"
    if price <= lower:
        return "down"
    return None


def evaluate(
    cond: Condition,
    price: Decimal,
    ema: Optional[Decimal] = None,
    ctx: EvaluationContext = DEFAULT_CONTEXT,
) -> Evaluation:
    """
    Pure evaluation of one condition against the tick snapshot.
    Range/Percent never change state; EmaCross flips is_above only on a trigger.
    """
    if ctx.round_price:
        price = round_half_up(price, ctx.places)

    if isinstance(cond, (RangeCondition, PercentCondition)):
        direction = _crossed_bounds(cond.lower, cond.upper, price)
        return Evaluation(direction is not None, cond, direction)

    if isinstance(cond, EmaCrossCondition):
        if ema is None:
            raise ValueError("ema_cross evaluation needs the current EMA")
        new_is_above = ema > price
        if new_is_above == cond.is_above:
            return Evaluation(False, replace(cond, current_ema=ema))
        # price fell under its EMA -> downtrend, rose over it -> uptrend
        direction: Direction = "down" if new_is_above else "up"
        return Evaluation(True, replace(cond, current_ema=ema, is_above=new_is_above), direction)

    raise TypeError(f"unknown condition type: {type(cond).__name__}")
