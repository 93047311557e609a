from dataclasses import replace
from decimal import Decimal as D

from cryptoalerts.alerts.conditions import EmaCrossCondition, PercentCondition, RangeCondition
from cryptoalerts.alerts.formatting import describe_notification, format_alert_list, format_trigger
from cryptoalerts.alerts.models import Notification
from cryptoalerts.utils.types import TriggerEvent

TS = 1_700_000_000  # 2023-11-14 22:13:20 UTC


def _evt(**kw):
    base = dict(notification_id="n", user_id="1", symbol="BTC", quote="USDT", kind="range",
                direction="up", price=D("67000.5"), ts=TS, lower=D("60000"), upper=D("67000"))
    base.update(kw)
    return TriggerEvent(**base)


def test_range_and_percent_messages():
    up = format_trigger(_evt())
    assert "BTC reached the upper boundary 67,000.00 USDT" in up
    assert "67,000.50" in up and "2023-11-14 22:13:20 UTC" in up

    down = format_trigger(_evt(kind="percent", direction="down", price=D("59999")))
    assert "fell to the lower boundary 60,000.00 USDT" in down


def test_ema_messages_and_timezone():
    up = format_trigger(_evt(kind="ema_cross", ema=D("66000"), lower=None, upper=None), "Europe/Helsinki")
    assert up.startswith("🚨 Uptrend detected for BTC (2023-11-15 00:13:20 EET)")
    assert "EMA: 66,000.00 USDT" in up
    down = format_trigger(_evt(kind="ema_cross", direction="down", ema=D("1")))
    assert "Downtrend" in down


def test_alert_listing():
    r = Notification.create(user_id="1", symbol="BTC", quote="USDT", now=TS,
                            condition=RangeCondition(lower=D("1"), upper=D("2.5")))
    p = Notification.create(user_id="1", symbol="ETH", quote="USDT", now=TS,
                            condition=PercentCondition.from_start("100", "10", "20"))
    e = Notification.create(user_id="1", symbol="SOL", quote="USDT", now=TS,
                            condition=EmaCrossCondition(start_ema=D("5"), current_ema=D("5"), is_above=False))

    assert describe_notification(r, TS + 3600) == "BTC/USDT: range 1.00 .. 2.50 [active, 1h old]"
    assert "(90.00 .. 120.00)" in describe_notification(p)
    assert "EMA 5.00 below price" in describe_notification(replace(e, is_active=False))
    assert "[triggered]" in describe_notification(replace(e, is_active=False))

    listing = format_alert_list([r, p, e])
    assert listing.startswith("Your alerts:\n") and listing.count("\n") == 3
    assert format_alert_list([]) == "You have no active alerts."
