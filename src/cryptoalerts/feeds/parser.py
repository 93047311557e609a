from __future__ import annotations

from typing import Any, Optional

from cryptoalerts.errors import InvalidSample
from cryptoalerts.utils.time import utc_now_s
from cryptoalerts.utils.types import PriceSample, to_price


class PayloadError(ValueError):
    """Exchange response does not have the expected shape."""


def normalize_ts(ts: Any) -> int:
    """Epoch seconds from s/ms/ns numbers or numeric strings; now when missing."""
    if ts is None or ts == "":
        return int(utc_now_s())
    ts = float(ts)
    if ts > 1e15:   # ns
        ts = ts / 1e9
    elif ts > 1e11:  # ms
        ts = ts / 1e3
    return int(ts)


def _data(m: dict) -> Any:
    if not isinstance(m, dict):
        raise PayloadError("response is not an object")
    code = m.get("code", 0)
    if code not in (0, "0", None):
        raise PayloadError(f"exchange error code={code} msg={m.get('msg')}")
    data = m.get("data")
    if data is None:
        raise PayloadError("missing data")
    return data


def parse_ticker_price(m: dict, symbol: str, quote: str) -> PriceSample:
    """
    BingX spot ticker/price response:
      {"code": 0, "data": [{"symbol": "BTC_USDT",
                            "trades": [{"price": "67000.1", "timestamp": 1717000000123}]}]}
    Older payloads put price/timestamp straight into data (object or list).
    """
    data = _data(m)
    row: Optional[dict] = None
    if isinstance(data, list):
        if not data:
            raise PayloadError("empty data")
        row = data[0]
    elif isinstance(data, dict):
        row = data
    if not isinstance(row, dict):
        raise PayloadError("unexpected data shape")

    trades = row.get("trades")
    if isinstance(trades, list):
        if not trades:
            raise PayloadError("no trades")
        row = trades[0]
    px = row.get("price")
    if px is None:
        raise PayloadError("missing price")
    try:
        price = to_price(px)
    except InvalidSample as e:
        raise PayloadError(str(e)) from None
    if price == 0:
        raise PayloadError("zero price")
    return PriceSample(symbol=symbol.upper(), quote=quote.upper(), price=price, ts=normalize_ts(row.get("timestamp")))


def parse_kline_open(m: dict) -> Optional[str]:
    """
    First kline of a market/his/v1/kline response -> its open price (index 1), or None.
    Rows are [openTime, open, high, low, close, volume, ...] or objects with "open".
    """
    data = _data(m)
    if not isinstance(data, list) or not data:
        return None
    candle = data[0]
    if isinstance(candle, (list, tuple)) and len(candle) > 1:
        return str(candle[1])
    if isinstance(candle, dict) and candle.get("open") is not None:
        return str(candle["open"])
    raise PayloadError("unexpected kline shape")
