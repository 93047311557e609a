# src/cryptoalerts/main.py
import asyncio
import signal

import structlog
from redis.asyncio import Redis

from cryptoalerts.alerts.conditions import EvaluationContext
from cryptoalerts.alerts.engine import AlertEngine, EngineConfig
from cryptoalerts.alerts.formatting import format_trigger
from cryptoalerts.alerts.manager import AlertManager
from cryptoalerts.alerts.notifiers import ConsoleDispatcher, FanoutDispatcher, QueueDispatcher
from cryptoalerts.config import Settings, settings_from_env
from cryptoalerts.feeds.bingx import BingXConfig, BingXPriceFeed
from cryptoalerts.indicators.ema import EmaTracker
from cryptoalerts.notify.commands import CommandRouter, TelegramCommandPoller
from cryptoalerts.notify.queue import NotifyQueue
from cryptoalerts.notify.telegram import TelegramConfig, TelegramNotifier
from cryptoalerts.utils.logging import configure_logging
from storage.redis_notifications import RedisNotificationStore

log = structlog.get_logger()


async def main(settings: Settings | None = None) -> None:
    settings = settings or settings_from_env()
    configure_logging(settings.log_level, settings.log_json)

    redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    store = RedisNotificationStore(redis_client, prefix=settings.redis_prefix)

    feed = BingXPriceFeed(BingXConfig(
        base_url=settings.bingx_base_url,
        api_key=settings.bingx_api_key,
        timeout_s=settings.feed_timeout_s,
    ))
    await feed.start()

    fmt = lambda e: format_trigger(e, settings.display_tz)  # noqa: E731
    console = ConsoleDispatcher(format_fn=fmt)

    # one tracker for evaluation and for seeding new ema alerts
    tracker = EmaTracker(period=settings.ema_period)
    manager = AlertManager(
        store=store,
        feed=feed,
        tracker=tracker,
        default_quote=settings.default_quote,
        seed_days=settings.ema_seed_days,
    )

    # Optional Telegram transport + chat commands. Without a token we only print.
    tg_notifier = tg_commands = None
    if settings.telegram_bot_token:
        tg_cfg = TelegramConfig(bot_token=settings.telegram_bot_token)
        notify_q = NotifyQueue(maxsize=2000)
        tg_notifier = TelegramNotifier(tg_cfg, notify_q, format_fn=fmt)
        tg_commands = TelegramCommandPoller(tg_cfg, CommandRouter(manager), reply=tg_notifier.send)
        dispatcher = FanoutDispatcher([QueueDispatcher(notify_q)], echo=[console])
        await tg_notifier.start()
        await tg_commands.start()
        log.info("telegram_enabled")
    else:
        dispatcher = FanoutDispatcher([console])
        log.info("telegram_disabled_missing_env")

    engine = AlertEngine(
        store=store,
        feed=feed,
        dispatcher=dispatcher,
        tracker=tracker,
        cfg=EngineConfig(
            max_concurrent_markets=settings.max_concurrent_markets,
            context=EvaluationContext(round_price=settings.round_price_before_compare),
        ),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # windows

    await engine.start(settings.tick_interval_s)
    try:
        await stop.wait()
    finally:
        # let the in-flight tick finish before closing its collaborators
        if tg_commands is not None:
            await tg_commands.stop()
        await engine.stop(timeout=max(30.0, settings.tick_interval_s))
        if tg_notifier is not None:
            await tg_notifier.stop()
        await feed.stop()
        await redis_client.aclose()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
