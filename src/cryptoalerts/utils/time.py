from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import List

DAY_S = 86_400


def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()


def utc_dt(ts: float | int) -> datetime:
    """Epoch seconds -> timezone-aware UTC datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def days_back(ts: int, n: int) -> List[int]:
    """[ts, ts-1d, ..., ts-(n-1)d]: one sample point per day, newest first."""
    return [int(ts) - i * DAY_S for i in range(max(0, n))]


def format_duration(seconds: float | int) -> str:
    """Compact "2d 3h 15m"; "<1m" below a minute."""
    s = max(0, int(seconds))
    days, rem = divmod(s, DAY_S)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "<1m"
