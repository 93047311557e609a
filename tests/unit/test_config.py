import pytest

from cryptoalerts.config import Settings, settings_from_env

ENV_VARS = [
    "REDIS_URL", "REDIS_PREFIX", "TICK_INTERVAL_S", "EMA_PERIOD", "EMA_SEED_DAYS",
    "MAX_CONCURRENT_MARKETS", "ROUND_PRICE_BEFORE_COMPARE", "DEFAULT_QUOTE", "BINGX_BASE_URL",
    "BINGX_API_KEY", "FEED_TIMEOUT_S", "TELEGRAM_BOT_TOKEN", "DISPLAY_TZ", "LOG_LEVEL", "LOG_JSON",
]


@pytest.fixture
def clean_env(monkeypatch):
    for v in ENV_VARS:
        monkeypatch.delenv(v, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    assert settings_from_env(dotenv=False) == Settings()


def test_overrides(clean_env):
    clean_env.setenv("TICK_INTERVAL_S", "60")
    clean_env.setenv("EMA_PERIOD", "9")
    clean_env.setenv("ROUND_PRICE_BEFORE_COMPARE", "true")
    clean_env.setenv("DEFAULT_QUOTE", "usdc")
    clean_env.setenv("TELEGRAM_BOT_TOKEN", "")
    s = settings_from_env(dotenv=False)
    assert s.tick_interval_s == 60.0 and s.ema_period == 9
    assert s.round_price_before_compare is True
    assert s.default_quote == "USDC"
    assert s.telegram_bot_token is None


@pytest.mark.parametrize("var, value", [("TICK_INTERVAL_S", "0"), ("EMA_PERIOD", "0"), ("EMA_PERIOD", "x")])
def test_rejects_bad_values(clean_env, var, value):
    clean_env.setenv(var, value)
    with pytest.raises(ValueError):
        settings_from_env(dotenv=False)
