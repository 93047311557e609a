# src/cryptoalerts/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass(slots=True, frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "alerts"
    tick_interval_s: float = 300.0
    ema_period: int = 20
    ema_seed_days: int = 20
    max_concurrent_markets: int = 16
    round_price_before_compare: bool = False
    default_quote: str = "USDT"
    bingx_base_url: str = "https://open-api.bingx.com"
    bingx_api_key: Optional[str] = None
    feed_timeout_s: float = 8.0
    telegram_bot_token: Optional[str] = None
    display_tz: str = "UTC"
    log_level: str = "INFO"
    log_json: bool = False


def settings_from_env(dotenv: bool = True) -> Settings:
    """Read settings from the environment (and a local .env unless dotenv=False)."""
    if dotenv:
        load_dotenv()
    s = Settings(
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        redis_prefix=os.getenv("REDIS_PREFIX", "alerts"),
        tick_interval_s=float(os.getenv("TICK_INTERVAL_S", "300")),
        ema_period=int(os.getenv("EMA_PERIOD", "20")),
        ema_seed_days=int(os.getenv("EMA_SEED_DAYS", "20")),
        max_concurrent_markets=int(os.getenv("MAX_CONCURRENT_MARKETS", "16")),
        round_price_before_compare=_flag("ROUND_PRICE_BEFORE_COMPARE"),
        default_quote=os.getenv("DEFAULT_QUOTE", "USDT").upper(),
        bingx_base_url=os.getenv("BINGX_BASE_URL", "https://open-api.bingx.com"),
        bingx_api_key=os.getenv("BINGX_API_KEY") or None,
        feed_timeout_s=float(os.getenv("FEED_TIMEOUT_S", "8")),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
        display_tz=os.getenv("DISPLAY_TZ", "UTC"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_flag("LOG_JSON"),
    )
    if s.tick_interval_s <= 0:
        raise ValueError("TICK_INTERVAL_S must be positive")
    if s.ema_period < 1:
        raise ValueError("EMA_PERIOD must be >= 1")
    return s
