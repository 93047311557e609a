# src/cryptoalerts/alerts/models.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from uuid import uuid4

from cryptoalerts.alerts.conditions import (
    Condition,
    ConditionKind,
    DEFAULT_CONTEXT,
    EmaCrossCondition,
    Evaluation,
    EvaluationContext,
    PercentCondition,
    RangeCondition,
    evaluate,
)
from cryptoalerts.errors import InvalidSample, MalformedNotification
from cryptoalerts.utils.types import market_of, to_price

# flat document fields per payload (matches storage/redis_notifications.py)
PAYLOAD_FIELDS: Dict[ConditionKind, Tuple[str, ...]] = {
    ConditionKind.RANGE: ("range.lower", "range.upper"),
    ConditionKind.PERCENT: (
        "percent.start_price", "percent.down_percent", "percent.up_percent",
        "percent.lower", "percent.upper",
    ),
    ConditionKind.EMA_CROSS: ("ema_cross.start_ema", "ema_cross.current_ema", "ema_cross.is_above"),
}


def new_id() -> str:
    return uuid4().hex


@dataclass(slots=True, frozen=True)
class Notification:
    """
    One user alert. Exactly one of range/percent/ema_cross is set and matches `kind`.

    Records read from the store are not validated on load: a broken document
    becomes a record with `defect` set, and reading `condition` raises
    MalformedNotification so the engine can skip and flag it.
    """
    id: str
    user_id: str           # chat reference
    symbol: str
    quote: str
    kind: Optional[ConditionKind]
    is_active: bool = True
    created_at: int = 0
    triggered_at: Optional[int] = None
    range: Optional[RangeCondition] = None
    percent: Optional[PercentCondition] = None
    ema_cross: Optional[EmaCrossCondition] = None
    defect: Optional[str] = field(default=None, compare=False)

    @property
    def market(self) -> str:
        return market_of(self.symbol, self.quote)

    @property
    def condition(self) -> Condition:
        if self.defect:
            raise MalformedNotification(self.id, self.defect)
        if self.kind is None:
            raise MalformedNotification(self.id, "missing kind")
        payloads = {
            ConditionKind.RANGE: self.range,
            ConditionKind.PERCENT: self.percent,
            ConditionKind.EMA_CROSS: self.ema_cross,
        }
        present = [k for k, v in payloads.items() if v is not None]
        if len(present) != 1:
            raise MalformedNotification(self.id, f"expected one condition payload, found {len(present)}")
        if present[0] is not self.kind:
            raise MalformedNotification(self.id, f"kind {self.kind.value} carries a {present[0].value} payload")
        return payloads[self.kind]

    @property
    def terminal(self) -> bool:
        return self.kind is not None and self.kind.terminal

    # --- construction ---

    @classmethod
    def create(cls, *, user_id: str, symbol: str, quote: str, condition: Condition, now: int) -> "Notification":
        kind = condition.kind
        return cls(
            id=new_id(),
            user_id=str(user_id),
            symbol=symbol.upper(),
            quote=quote.upper(),
            kind=kind,
            is_active=True,
            created_at=int(now),
            **{kind.value: condition},
        )

    # --- evaluation & transitions ---

    def evaluate(
        self,
        price: Decimal,
        ema: Optional[Decimal] = None,
        ctx: EvaluationContext = DEFAULT_CONTEXT,
    ) -> Evaluation:
        cond = self.condition
        # a triggered terminal alert stays quiet for any price
        if self.terminal and (not self.is_active or self.triggered_at is not None):
            return Evaluation(False, cond)
        return evaluate(cond, price, ema, ctx)

    def apply_trigger(self, result: Evaluation, now: int) -> Tuple["Notification", Tuple[str, ...]]:
        """
        Next record after a qualifying trigger plus the document fields it changed.
        Only those fields may be written back.
        """
        if not result.triggered:
            return self, ()
        if self.terminal:
            if self.triggered_at is not None:
                return self, ()
            return replace(self, is_active=False, triggered_at=int(now)), ("is_active", "triggered_at")
        nxt = replace(self, ema_cross=result.state, is_active=True, triggered_at=int(now))
        return nxt, ("ema_cross.current_ema", "ema_cross.is_above", "triggered_at")

    # --- document mapping ---

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "symbol": self.symbol,
            "quote": self.quote,
            "kind": self.kind.value if self.kind else None,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "triggered_at": self.triggered_at,
        }
        if self.range is not None:
            doc["range.lower"] = self.range.lower
            doc["range.upper"] = self.range.upper
        if self.percent is not None:
            p = self.percent
            doc.update({
                "percent.start_price": p.start_price,
                "percent.down_percent": p.down_percent,
                "percent.up_percent": p.up_percent,
                "percent.lower": p.lower,
                "percent.upper": p.upper,
            })
        if self.ema_cross is not None:
            e = self.ema_cross
            doc.update({
                "ema_cross.start_ema": e.start_ema,
                "ema_cross.current_ema": e.current_ema,
                "ema_cross.is_above": e.is_above,
            })
        return doc

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> "Notification":
        """
        Build a record from a flat document. A payload counts as present when any of
        its fields is; partial payloads, bad numbers and unknown kinds set `defect`.
        """
        nid = str(doc.get("id") or "?")
        triggered = doc.get("triggered_at")
        base = dict(
            id=nid,
            user_id=str(doc.get("user_id", "")),
            symbol=str(doc.get("symbol", "")).upper(),
            quote=str(doc.get("quote", "")).upper(),
            is_active=as_bool(doc.get("is_active", True)),
            created_at=int(doc.get("created_at") or 0),
            triggered_at=int(triggered) if triggered not in (None, "") else None,
        )
        try:
            kind = ConditionKind(str(doc.get("kind")))
        except ValueError:
            return cls(kind=None, defect=f"unknown kind {doc.get('kind')!r}", **base)
        try:
            payloads = _payloads_from_doc(doc)
        except (MalformedNotification, InvalidSample) as e:
            reason = e.reason if isinstance(e, MalformedNotification) else str(e)
            return cls(kind=kind, defect=reason, **base)
        return cls(kind=kind, **payloads, **base)


def latest_ema_record(notifs: Iterable[Notification]) -> Notification:
    """
    The ema_cross record whose stored current_ema was written last.
    current_ema is refreshed on flips (triggered_at) and set at creation, so
    the newest of those two stamps wins; ties fall back to the id so the
    choice never depends on load order.
    """
    return max(notifs, key=lambda n: (n.triggered_at or n.created_at, n.id))

def _payloads_from_doc(doc: Mapping[str, Any]) -> Dict[str, Condition]:
    nid = str(doc.get("id") or "?")
    out: Dict[str, Condition] = {}
    for k, names in PAYLOAD_FIELDS.items():
        present = [n for n in names if doc.get(n) not in (None, "")]
        if not present:
            continue
        if len(present) != len(names):
            raise MalformedNotification(nid, f"incomplete {k.value} payload")
        if k is ConditionKind.RANGE:
            out["range"] = RangeCondition(lower=to_price(doc["range.lower"]), upper=to_price(doc["range.upper"]))
        elif k is ConditionKind.PERCENT:
            out["percent"] = PercentCondition(
                start_price=to_price(doc["percent.start_price"]),
                down_percent=to_price(doc["percent.down_percent"]),
                up_percent=to_price(doc["percent.up_percent"]),
                lower=to_price(doc["percent.lower"]),
                upper=to_price(doc["percent.upper"]),
            )
        else:
            out["ema_cross"] = EmaCrossCondition(
                start_ema=to_price(doc["ema_cross.start_ema"]),
                current_ema=to_price(doc["ema_cross.current_ema"]),
                is_above=as_bool(doc["ema_cross.is_above"]),
            )
    return out


def as_bool(v: Any) -> bool:
    """Decode a stored flag ("1"/"0", "true"/"false", bytes, bool)."""
    if isinstance(v, (bytes, bytearray)):
        v = v.decode("utf-8")
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes")
    return bool(v)
