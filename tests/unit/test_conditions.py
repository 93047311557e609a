from decimal import Decimal as D

import pytest

from cryptoalerts.alerts.conditions import (
    ConditionKind,
    EmaCrossCondition,
    EvaluationContext,
    PercentCondition,
    RangeCondition,
    evaluate,
)
from cryptoalerts.alerts.models import Notification


def test_percent_bounds_derived_once():
    c = PercentCondition.from_start(100, 10, 20)
    assert c.lower == D("90.00")
    assert c.upper == D("120.00")
    assert str(c.lower) == "90.00"


def test_percent_bounds_round_half_up():
    c = PercentCondition.from_start("33.35", "10", "10")
    # 30.015 -> 30.02, 36.685 -> 36.69
    assert c.lower == D("30.02")
    assert c.upper == D("36.69")


def test_range_boundaries_are_inclusive():
    c = RangeCondition(lower=D("90.00"), upper=D("120.00"))
    assert evaluate(c, D("90.00")) == (True, c, "down")
    assert evaluate(c, D("90.01")).triggered is False
    assert evaluate(c, D("119.99")).triggered is False
    assert evaluate(c, D("120.00")) == (True, c, "up")
    assert evaluate(c, D("500")).direction == "up"


def test_percent_uses_precomputed_bounds():
    c = PercentCondition.from_start(100, 10, 20)
    assert evaluate(c, D("90")).triggered
    assert not evaluate(c, D("90.001")).triggered
    assert evaluate(c, D("120.5")).state is c


def test_ema_cross_flip_and_hysteresis():
    c = EmaCrossCondition(start_ema=D(105), current_ema=D(105), is_above=True)
    # EMA 98 under price 100 -> flipped
    r1 = evaluate(c, D(100), D(98))
    assert r1.triggered and r1.state.is_above is False and r1.direction == "up"
    # still under price -> no trigger, no change of side
    r2 = evaluate(r1.state, D(99), D(97))
    assert not r2.triggered and r2.state.is_above is False
    # back over price -> trigger again
    r3 = evaluate(r2.state, D(95), D(96))
    assert r3.triggered and r3.state.is_above is True and r3.direction == "down"


def test_ema_cross_equal_counts_as_not_above():
    c = EmaCrossCondition(start_ema=D(100), current_ema=D(100), is_above=True)
    assert evaluate(c, D(100), D(100)).triggered


def test_ema_cross_needs_ema():
    c = EmaCrossCondition(start_ema=D(1), current_ema=D(1), is_above=True)
    with pytest.raises(ValueError):
        evaluate(c, D(1))


def test_context_rounds_live_price_when_asked():
    c = RangeCondition(lower=D("90.00"), upper=D("120.00"))
    assert not evaluate(c, D("90.004")).triggered
    assert evaluate(c, D("90.004"), ctx=EvaluationContext(round_price=True)).triggered


def test_terminal_kinds():
    assert ConditionKind.RANGE.terminal and ConditionKind.PERCENT.terminal
    assert not ConditionKind.EMA_CROSS.terminal


@pytest.mark.parametrize("price", ["0", "89", "100", "121", "1000000"])
def test_triggered_terminal_notification_stays_quiet(price):
    n = Notification.create(
        user_id="42", symbol="btc", quote="usdt",
        condition=PercentCondition.from_start(100, 10, 20), now=1,
    )
    first = n.evaluate(D("85"))
    assert first.triggered
    done, fields = n.apply_trigger(first, now=2)
    assert not done.is_active and done.triggered_at == 2
    assert set(fields) == {"is_active", "triggered_at"}
    assert done.evaluate(D(price)).triggered is False
    # applying again never moves triggered_at
    again, fields2 = done.apply_trigger(first, now=3)
    assert again.triggered_at == 2 and fields2 == ()


def test_ema_notification_stays_active_after_trigger():
    n = Notification.create(
        user_id="42", symbol="ETH", quote="USDT",
        condition=EmaCrossCondition(start_ema=D(105), current_ema=D(105), is_above=True), now=1,
    )
    r = n.evaluate(D(100), D(98))
    nxt, fields = n.apply_trigger(r, now=5)
    assert nxt.is_active and nxt.triggered_at == 5
    assert nxt.ema_cross.is_above is False and nxt.ema_cross.current_ema == D(98)
    assert "is_active" not in fields
    assert nxt.evaluate(D(99), D(97)).triggered is False
