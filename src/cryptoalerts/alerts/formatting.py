from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from cryptoalerts.alerts.conditions import ConditionKind
from cryptoalerts.alerts.models import Notification
from cryptoalerts.utils.time import format_duration, utc_dt
from cryptoalerts.utils.types import TriggerEvent


def _fmt_ts(ts_s: int, tz_name: str) -> str:
    tz = ZoneInfo(tz_name)
    return utc_dt(ts_s).astimezone(tz).strftime("%Y-%m-%d %H:%M:%S %Z")


def _px(v: Optional[Decimal]) -> str:
    return "-" if v is None else f"{v:,.2f}"


def format_trigger(evt: TriggerEvent, tz_name: str = "UTC") -> str:
    sym, quote = evt.symbol, evt.quote
    when = _fmt_ts(evt.ts, tz_name)
    if evt.kind == ConditionKind.EMA_CROSS.value:
        trend = "Uptrend" if evt.direction == "up" else "Downtrend"
        arrow = "📈" if evt.direction == "up" else "📉"
        return (
            f"🚨 {trend} detected for {sym} ({when})\n"
            f"💰 Price: {_px(evt.price)} {quote}\n"
            f"{arrow} EMA: {_px(evt.ema)} {quote}"
        )
    if evt.direction == "up":
        line = f"🚨 {sym} reached the upper boundary {_px(evt.upper)} {quote}"
    else:
        line = f"🚨 {sym} fell to the lower boundary {_px(evt.lower)} {quote}"
    return f"{line}\n💰 Price now: {_px(evt.price)} {quote} ({when})"


def describe_notification(n: Notification, now: Optional[int] = None) -> str:
    """One line per alert for listings."""
    age = f", {format_duration(now - n.created_at)} old" if now is not None and n.created_at else ""
    state = "active" if n.is_active else "triggered"
    if n.kind is ConditionKind.RANGE and n.range is not None:
        body = f"range {_px(n.range.lower)} .. {_px(n.range.upper)}"
    elif n.kind is ConditionKind.PERCENT and n.percent is not None:
        p = n.percent
        body = (f"percent -{p.down_percent}% / +{p.up_percent}% from {_px(p.start_price)} "
                f"({_px(p.lower)} .. {_px(p.upper)})")
    elif n.kind is ConditionKind.EMA_CROSS and n.ema_cross is not None:
        e = n.ema_cross
        side = "above" if e.is_above else "below"
        body = f"EMA cross, EMA {_px(e.current_ema)} {side} price"
    else:
        body = "malformed"
    return f"{n.symbol}/{n.quote}: {body} [{state}{age}]"


def format_alert_list(notifs: Iterable[Notification], now: Optional[int] = None) -> str:
    lines = [describe_notification(n, now) for n in notifs]
    if not lines:
        return "You have no active alerts."
    return "Your alerts:\n" + "\n".join(lines)
