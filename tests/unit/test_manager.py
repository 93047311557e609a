from decimal import Decimal as D

import pytest

from cryptoalerts.alerts.conditions import ConditionKind, EmaCrossCondition, PercentCondition, RangeCondition
from cryptoalerts.alerts.engine import AlertEngine
from cryptoalerts.alerts.manager import AlertManager
from cryptoalerts.alerts.models import Notification
from cryptoalerts.errors import FeedUnavailable
from cryptoalerts.indicators.ema import EmaTracker
from cryptoalerts.utils.time import DAY_S
from tests.helpers.fakes import FakeFeed, FakeStore, RecordingDispatcher


def _manager(feed=None, tracker=None, seed_days=3):
    store = FakeStore()
    m = AlertManager(store=store, feed=feed or FakeFeed(), tracker=tracker,
                     seed_days=seed_days, clock=lambda: 1_000)
    return m, store


@pytest.mark.asyncio
async def test_range_alert_rounds_and_validates():
    m, store = _manager()
    n = await m.set_range_alert("5", "btc", "90.004", "120.005")
    assert n.symbol == "BTC" and n.quote == "USDT" and n.created_at == 1_000
    assert n.range == RangeCondition(lower=D("90.00"), upper=D("120.01"))
    assert n.id in store.docs

    with pytest.raises(ValueError):
        await m.set_range_alert("5", "BTC", "100", "100")


@pytest.mark.asyncio
async def test_percent_alert_bounds_from_fetched_price():
    feed = FakeFeed({"ETH-USDT": "100.004"})
    m, store = _manager(feed)
    n = await m.set_percent_alert("5", "eth", 10, 20)
    assert n.percent == PercentCondition(
        start_price=D("100.00"), down_percent=D("10"), up_percent=D("20"),
        lower=D("90.00"), upper=D("120.00"),
    )
    assert n.created_at == feed.ts
    assert feed.calls == ["ETH-USDT"]


@pytest.mark.asyncio
@pytest.mark.parametrize("down, up", [(100, 5), (0, 0)])
async def test_percent_alert_rejects_bad_bounds(down, up):
    feed = FakeFeed({"ETH-USDT": "100"})
    m, store = _manager(feed)
    with pytest.raises(ValueError):
        await m.set_percent_alert("5", "ETH", down, up)
    assert feed.calls == [] and store.docs == {}


@pytest.mark.asyncio
async def test_ema_alert_seeds_from_daily_sma():
    feed = FakeFeed({"SOL-USDT": "100"}, history={"SOL-USDT": ["100", "101", "102.03"]})
    tracker = EmaTracker(period=20)
    m, store = _manager(feed, tracker)

    n = await m.set_ema_alert("5", "sol")
    e = n.ema_cross
    assert e.start_ema == e.current_ema == D("101.01")
    assert e.is_above is True           # EMA above price at creation
    assert tracker.get("SOL-USDT") == D("101.01")

    [(market, points)] = feed.history_calls
    assert market == "SOL-USDT"
    assert points == [feed.ts, feed.ts - DAY_S, feed.ts - 2 * DAY_S]


@pytest.mark.asyncio
async def test_ema_alert_follows_live_tracker_ema():
    # tracker EMA 90 below price 100, while the daily SMA (110) sits above it
    feed = FakeFeed({"SOL-USDT": "100"}, history={"SOL-USDT": ["110", "110", "110"]})
    tracker = EmaTracker(period=20)
    tracker.seed("SOL-USDT", D("90"))
    m, store = _manager(feed, tracker)

    n = await m.set_ema_alert("5", "SOL")
    assert n.ema_cross == EmaCrossCondition(start_ema=D("110.00"), current_ema=D("90"), is_above=False)
    assert tracker.get("SOL-USDT") == D("90")

    # steady price: the EMA stays below it, so nothing fires
    sink = RecordingDispatcher()
    engine = AlertEngine(store=store, feed=feed, dispatcher=sink, tracker=tracker)
    rep = await engine.run_tick(now=feed.ts)
    assert rep.evaluated == 1 and rep.triggered == 0
    assert sink.events == []


@pytest.mark.asyncio
async def test_ema_alert_after_restart_uses_stored_ema():
    feed = FakeFeed({"SOL-USDT": "100"}, history={"SOL-USDT": ["110"]})
    tracker = EmaTracker(period=20)
    old = Notification.create(user_id="1", symbol="SOL", quote="USDT", now=10,
                              condition=EmaCrossCondition(start_ema=D("80"), current_ema=D("95"), is_above=False))
    store = FakeStore([old])
    m = AlertManager(store=store, feed=feed, tracker=tracker, seed_days=1)

    n = await m.set_ema_alert("5", "SOL")
    assert n.ema_cross.current_ema == D("95") and n.ema_cross.is_above is False
    assert tracker.get("SOL-USDT") == D("95")

@pytest.mark.asyncio
async def test_ema_alert_without_history_fails():
    feed = FakeFeed({"SOL-USDT": "100"})
    m, store = _manager(feed)
    with pytest.raises(FeedUnavailable):
        await m.set_ema_alert("5", "SOL")
    assert store.docs == {}


@pytest.mark.asyncio
async def test_list_and_delete():
    feed = FakeFeed({"BTC-USDT": "100"})
    m, store = _manager(feed)
    a = await m.set_range_alert("5", "BTC", "1", "2")
    b = await m.set_percent_alert("5", "BTC", 5, 5)
    await m.set_range_alert("6", "BTC", "1", "2")

    listed = await m.list_alerts("5")
    assert {n.id for n in listed} == {a.id, b.id}

    assert await m.delete_alert("5", "btc", "percent") is True
    assert store.deleted == [b.id]
    assert await m.delete_alert("5", "BTC", ConditionKind.EMA_CROSS) is False

    assert await m.delete_all_alerts("5") == 1
    assert await m.list_alerts("5") == []
    assert len(await m.list_alerts("6")) == 1
