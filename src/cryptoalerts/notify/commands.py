# src/cryptoalerts/notify/commands.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
import structlog

from cryptoalerts.alerts.conditions import ConditionKind
from cryptoalerts.alerts.formatting import describe_notification, format_alert_list
from cryptoalerts.alerts.manager import AlertManager
from cryptoalerts.errors import FeedUnavailable, InvalidSample
from cryptoalerts.notify.telegram import TelegramConfig
from cryptoalerts.utils.time import utc_now_s

log = structlog.get_logger("commands")

HELP = (
    "Alert commands:\n"
    "/set_alert_val SYMBOL MAX MIN - fire when the price leaves [MIN, MAX]\n"
    "/set_alert_perc SYMBOL UP% DOWN% - fire on a move of UP% / DOWN% from now\n"
    "/set_alert_ema SYMBOL - fire when the price crosses its EMA\n"
    "/my_alerts - list your active alerts\n"
    "/delete_alert VAL|PERC|EMA SYMBOL - delete one alert\n"
    "/delete_all_alerts - delete every alert"
)

KIND_ALIASES = {
    "VAL": ConditionKind.RANGE,
    "RANGE": ConditionKind.RANGE,
    "PERC": ConditionKind.PERCENT,
    "PERCENT": ConditionKind.PERCENT,
    "EMA": ConditionKind.EMA_CROSS,
}


def split_command(text: str) -> Optional[Tuple[str, List[str]]]:
    """'/cmd@bot a b' -> ('/cmd', ['a', 'b']); None for plain chat text."""
    parts = (text or "").split()
    if not parts or not parts[0].startswith("/"):
        return None
    return parts[0].split("@", 1)[0].lower(), parts[1:]


class CommandRouter:
    """
    Turns one chat command into AlertManager calls and returns the reply text.
    The chat id is the alert owner.
    """

    def __init__(self, manager: AlertManager, clock: Callable[[], float] = utc_now_s):
        self.manager = manager
        self._clock = clock
        self._handlers: Dict[str, Callable[[str, List[str]], Awaitable[str]]] = {
            "/start": self._help,
            "/help": self._help,
            "/set_alert_val": self._set_val,
            "/set_alert_perc": self._set_perc,
            "/set_alert_ema": self._set_ema,
            "/my_alerts": self._my_alerts,
            "/delete_alert": self._delete,
            "/delete_all_alerts": self._delete_all,
        }

    async def handle(self, chat_id: str, text: str) -> Optional[str]:
        parsed = split_command(text)
        if parsed is None:
            return None
        cmd, args = parsed
        handler = self._handlers.get(cmd)
        if handler is None:
            return f"Unknown command {cmd}. Send /help for the list."
        try:
            return await handler(str(chat_id), args)
        except (ValueError, InvalidSample) as e:
            return f"❌ {e}"
        except FeedUnavailable as e:
            log.warning("command_feed_unavailable", cmd=cmd, market=e.market, err=e.reason)
            return f"❌ No price for {e.market} right now, try again later."

    async def _help(self, chat_id: str, args: List[str]) -> str:
        return HELP

    async def _set_val(self, chat_id: str, args: List[str]) -> str:
        if len(args) != 3:
            return "Usage: /set_alert_val SYMBOL MAX MIN"
        symbol, upper, lower = args
        n = await self.manager.set_range_alert(chat_id, symbol, lower, upper)
        return f"✅ Alert set: {describe_notification(n)}"

    async def _set_perc(self, chat_id: str, args: List[str]) -> str:
        if len(args) != 3:
            return "Usage: /set_alert_perc SYMBOL UP% DOWN%"
        symbol, up, down = args
        n = await self.manager.set_percent_alert(chat_id, symbol, down, up)
        return f"✅ Alert set: {describe_notification(n)}"

    async def _set_ema(self, chat_id: str, args: List[str]) -> str:
        if len(args) != 1:
            return "Usage: /set_alert_ema SYMBOL"
        n = await self.manager.set_ema_alert(chat_id, args[0])
        return f"✅ Alert set: {describe_notification(n)}"

    async def _my_alerts(self, chat_id: str, args: List[str]) -> str:
        notifs = await self.manager.list_alerts(chat_id)
        return format_alert_list(notifs, int(self._clock()))

    async def _delete(self, chat_id: str, args: List[str]) -> str:
        if len(args) != 2:
            return "Usage: /delete_alert VAL|PERC|EMA SYMBOL"
        kind = KIND_ALIASES.get(args[0].upper())
        if kind is None:
            return "❌ Alert type must be VAL, PERC or EMA"
        symbol = args[1].upper()
        if await self.manager.delete_alert(chat_id, symbol, kind):
            return f"✅ {args[0].upper()} alert for {symbol} deleted"
        return f"❌ No {args[0].upper()} alert for {symbol}"

    async def _delete_all(self, chat_id: str, args: List[str]) -> str:
        count = await self.manager.delete_all_alerts(chat_id)
        return f"✅ Deleted {count} alert(s)"


def parse_updates(body: Any, offset: int) -> Tuple[int, List[Tuple[str, str]]]:
    """
    getUpdates response -> (next offset, [(chat_id, text)]).
    Updates without a text message still advance the offset.
    """
    if not isinstance(body, dict) or not body.get("ok"):
        return offset, []
    out: List[Tuple[str, str]] = []
    for upd in body.get("result") or []:
        uid = upd.get("update_id")
        if isinstance(uid, int):
            offset = max(offset, uid + 1)
        msg = upd.get("message") or upd.get("edited_message") or {}
        chat = (msg.get("chat") or {}).get("id")
        text = msg.get("text")
        if chat is not None and isinstance(text, str):
            out.append((str(chat), text))
    return offset, out


class TelegramCommandPoller:
    """
    Long-polls getUpdates and answers each command through `reply(chat_id, text)`
    (TelegramNotifier.send). Runs in the engine's process so alert creation
    sees the same EMA tracker the engine evaluates with.
    """

    def __init__(
        self,
        cfg: TelegramConfig,
        router: CommandRouter,
        reply: Callable[[str, str], Awaitable[bool]],
        poll_timeout_s: int = 25,
    ):
        self.cfg = cfg
        self.router = router
        self.reply = reply
        self.poll_timeout_s = int(poll_timeout_s)
        self.offset = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.handled = 0

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="telegram-commands")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._session:
            await self._session.close()
            self._session = None

    async def poll_once(self) -> int:
        """One getUpdates round trip; returns how many commands were answered."""
        assert self._session is not None
        url = f"{self.cfg.api_url}/bot{self.cfg.bot_token}/getUpdates"
        params = {"offset": self.offset, "timeout": self.poll_timeout_s}
        timeout = aiohttp.ClientTimeout(total=self.poll_timeout_s + self.cfg.timeout_s)
        async with self._session.get(url, params=params, timeout=timeout) as resp:
            if resp.status != 200:
                raise aiohttp.ClientError(f"getUpdates http {resp.status}")
            body = await resp.json(content_type=None)
        self.offset, messages = parse_updates(body, self.offset)
        answered = 0
        for chat_id, text in messages:
            try:
                answer = await self.router.handle(chat_id, text)
            except Exception as e:
                log.exception("command_failed", chat_id=chat_id, err=str(e))
                answer = "❌ Something went wrong, please try again later."
            if answer is None:
                continue
            await self.reply(chat_id, answer)
            answered += 1
        self.handled += answered
        return answered

    async def _loop(self) -> None:
        failures = 0
        while not self._stop.is_set():
            try:
                await self.poll_once()
                failures = 0
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                failures += 1
                log.warning("telegram_poll_failed", err=str(e) or type(e).__name__, failures=failures)
                await asyncio.sleep(self.cfg.retry.base_delay(failures))
