from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import aiohttp
import structlog

from cryptoalerts.errors import FeedUnavailable, InvalidSample
from cryptoalerts.feeds.parser import PayloadError, parse_kline_open, parse_ticker_price
from cryptoalerts.utils.backoff import RetryPolicy
from cryptoalerts.utils.types import PriceSample, market_of, to_price

log = structlog.get_logger("bingx")


@dataclass(slots=True)
class BingXConfig:
    base_url: str = "https://open-api.bingx.com"
    api_key: Optional[str] = None
    timeout_s: float = 8.0
    # small in-call retry for transient 5xx/network errors; ticks retry anyway
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2, initial_s=0.25, cap_s=2.0))
    history_concurrency: int = 5


class BingXPriceFeed:
    """
    PriceFeed over the BingX spot REST API.

    get_price() returns one PriceSample or raises FeedUnavailable; it never
    hands back a zero or unparsable price.
    """

    TICKER_PATH = "/openApi/spot/v1/ticker/price"
    KLINE_PATH = "/openApi/market/his/v1/kline"

    def __init__(self, cfg: Optional[BingXConfig] = None, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg or BingXConfig()
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(base_url=self.cfg.base_url, timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict:
        return {"X-BX-APIKEY": self.cfg.api_key} if self.cfg.api_key else {}

    @staticmethod
    def _pair(symbol: str, quote: str) -> str:
        return f"{symbol.upper()}-{quote.upper()}"

    async def _get_json(self, path: str, params: dict, market: str) -> dict:
        if self._session is None:
            await self.start()
        assert self._session is not None
        last_err = ""
        for attempt in range(1, self.cfg.retry.attempts + 1):
            try:
                async with self._session.get(path, params=params, headers=self._headers()) as resp:
                    if resp.status == 200:
                        return await resp.json(content_type=None)
                    last_err = f"http {resp.status}"
                    if resp.status != 429 and resp.status < 500:
                        break
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_err = str(e) or type(e).__name__
            log.warning("feed_request_failed", market=market, path=path, err=last_err, attempt=attempt)
            await self.cfg.retry.wait(attempt)
        raise FeedUnavailable(market, last_err)

    async def get_price(self, symbol: str, quote: str) -> PriceSample:
        market = market_of(symbol, quote)
        body = await self._get_json(self.TICKER_PATH, {"symbol": self._pair(symbol, quote)}, market)
        try:
            return parse_ticker_price(body, symbol, quote)
        except PayloadError as e:
            raise FeedUnavailable(market, str(e)) from None

    async def get_price_at(self, symbol: str, quote: str, ts: int):
        """Open price of the 1m candle containing `ts` (epoch seconds), or None when the exchange has none."""
        market = market_of(symbol, quote)
        start_ms = (int(ts) * 1000 // 60_000) * 60_000
        params = {
            "symbol": self._pair(symbol, quote),
            "interval": "1m",
            "startTime": start_ms,
            "endTime": start_ms + 60_000,
            "limit": 1,
        }
        body = await self._get_json(self.KLINE_PATH, params, market)
        try:
            raw = parse_kline_open(body)
        except PayloadError as e:
            raise FeedUnavailable(market, str(e)) from None
        if raw is None:
            return None
        try:
            return to_price(raw)
        except InvalidSample as e:
            raise FeedUnavailable(market, str(e)) from None

    async def get_history(self, symbol: str, quote: str, timestamps: Sequence[int]) -> List:
        """
        Historical prices at each timestamp, fetched concurrently (bounded).
        Missing or failed points are dropped, so the result may be shorter.
        """
        sem = asyncio.Semaphore(max(1, self.cfg.history_concurrency))

        async def one(ts: int):
            async with sem:
                try:
                    return await self.get_price_at(symbol, quote, ts)
                except FeedUnavailable as e:
                    log.warning("history_point_failed", market=e.market, ts=ts, err=e.reason)
                    return None

        results = await asyncio.gather(*(one(t) for t in timestamps))
        return [p for p in results if p is not None]
