from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

import aiohttp
import structlog

from cryptoalerts.utils.backoff import RetryPolicy
from cryptoalerts.utils.types import TriggerEvent

log = structlog.get_logger("telegram")

# --------- small rate limiter (token bucket) ----------

class RateLimiter:
    def __init__(self, rate_per_sec: float, burst: int = 1):
        self.rate = float(rate_per_sec)
        self.capacity = int(burst)
        self.tokens = float(burst)
        self.updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now
            if self.tokens < 1.0:
                await asyncio.sleep((1.0 - self.tokens) / self.rate)
                self.updated = time.monotonic()
                self.tokens = 1.0
            self.tokens -= 1.0

# --------- config & client ----------

@dataclass(slots=True)
class TelegramConfig:
    bot_token: str
    api_url: str = "https://api.telegram.org"
    parse_mode: Optional[str] = None  # "HTML" or "MarkdownV2" or None
    timeout_s: float = 8.0
    global_rate_per_sec: float = 25.0  # bot-wide ceiling
    per_chat_rate_per_sec: float = 1.0
    per_chat_burst: int = 3
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=5, initial_s=0.5, cap_s=8.0))


class TelegramNotifier:
    """
    Background worker that drains the notify queue and delivers each
    TriggerEvent to its owner's chat (event.user_id), with rate limiting
    and retry w/ backoff. Delivery retries live here, not in the engine.
    """
    def __init__(self, cfg: TelegramConfig, alerts_queue, format_fn: Optional[Callable[[TriggerEvent], str]] = None):
        self.cfg = cfg
        self.q = alerts_queue  # anything with async .get()
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._global_rl = RateLimiter(rate_per_sec=cfg.global_rate_per_sec, burst=int(cfg.global_rate_per_sec))
        self._chat_rl: Dict[str, RateLimiter] = {}
        self._format_fn = format_fn or self._default_format
        self.sent = 0
        self.failed = 0

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="telegram-notifier")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        pending = self.q.qsize() if hasattr(self.q, "qsize") else 0
        if pending:
            log.warning("telegram_stopped_with_pending", pending=pending)
        if self._session:
            await self._session.close()
            self._session = None

    async def _loop(self) -> None:
        try:
            while not self._stop.is_set():
                evt = await self.q.get()
                try:
                    text = self._format_fn(evt)
                except Exception as e:
                    log.warning("telegram_format_failed", err=str(e))
                    text = self._default_format(evt)
                if await self.send(str(evt.user_id), text):
                    self.sent += 1
                else:
                    self.failed += 1
        except asyncio.CancelledError:
            return

    def _limiter(self, chat_id: str) -> RateLimiter:
        rl = self._chat_rl.get(chat_id)
        if rl is None:
            rl = RateLimiter(rate_per_sec=self.cfg.per_chat_rate_per_sec, burst=self.cfg.per_chat_burst)
            self._chat_rl[chat_id] = rl
        return rl

    async def send(self, chat_id: str, text: str) -> bool:
        """Send one message; True once Telegram accepted it."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.cfg.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        await self._limiter(chat_id).acquire()
        await self._global_rl.acquire()

        url = f"{self.cfg.api_url}/bot{self.cfg.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text}
        if self.cfg.parse_mode:
            payload["parse_mode"] = self.cfg.parse_mode

        for attempt in range(1, self.cfg.retry.attempts + 1):
            try:
                async with self._session.post(url, data=payload) as resp:
                    if resp.status == 200:
                        return True
                    detail = await _maybe_text(resp)
                    log.warning("telegram_send_failed", status=resp.status, body=detail, attempt=attempt, chat_id=chat_id)
                    if resp.status == 429:
                        retry_after = await _retry_after(resp)
                        if retry_after:
                            await asyncio.sleep(retry_after)
                            continue
                    if 500 <= resp.status < 600 or resp.status == 429:
                        await self.cfg.retry.wait(attempt)
                        continue
                    # other 4xx (blocked bot, bad chat id): don't retry
                    return False
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning("telegram_network_error", err=str(e), attempt=attempt, chat_id=chat_id)
                await self.cfg.retry.wait(attempt)
        log.error("telegram_give_up_after_retries", chat_id=chat_id)
        return False

    @staticmethod
    def _default_format(evt: TriggerEvent) -> str:
        return f"[{evt.symbol}/{evt.quote}] {evt.kind} {evt.direction}: {evt.price}"


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"


async def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    # Telegram puts retry_after (seconds) under "parameters"
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ClientError, ValueError):
        return None
    ra = (data or {}).get("parameters", {}).get("retry_after")
    return float(ra) if ra else None
