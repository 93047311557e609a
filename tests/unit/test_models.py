from decimal import Decimal as D

import pytest

from cryptoalerts.alerts.conditions import ConditionKind, RangeCondition
from cryptoalerts.alerts.models import Notification
from cryptoalerts.errors import MalformedNotification


def _range_doc(**over):
    doc = {
        "id": "n1", "user_id": "7", "symbol": "BTC", "quote": "USDT", "kind": "range",
        "is_active": "1", "created_at": "100", "triggered_at": "",
        "range.lower": "90.00", "range.upper": "120.00",
    }
    doc.update(over)
    return doc


def test_from_doc_reads_flat_strings():
    n = Notification.from_doc(_range_doc())
    assert n.kind is ConditionKind.RANGE
    assert n.condition == RangeCondition(lower=D("90.00"), upper=D("120.00"))
    assert n.is_active is True and n.triggered_at is None and n.created_at == 100
    assert n.market == "BTC-USDT"


def test_to_doc_carries_only_the_populated_payload():
    n = Notification.from_doc(_range_doc())
    doc = n.to_doc()
    assert doc["range.lower"] == D("90.00")
    assert not any(k.startswith(("percent.", "ema_cross.")) for k in doc)


@pytest.mark.parametrize(
    "over, reason",
    [
        ({"range.lower": "", "range.upper": ""}, "found 0"),
        ({"ema_cross.start_ema": "1", "ema_cross.current_ema": "1", "ema_cross.is_above": "1"}, "found 2"),
        ({"range.upper": ""}, "incomplete range"),
        ({"range.lower": "nan"}, "non-finite"),
        ({"kind": "ema_cross"}, "carries a range payload"),
        ({"kind": "bogus"}, "unknown kind"),
    ],
)
def test_malformed_documents_raise_on_condition(over, reason):
    n = Notification.from_doc(_range_doc(**over))
    with pytest.raises(MalformedNotification) as ei:
        n.condition
    assert reason in str(ei.value)
    assert ei.value.notification_id == "n1"
