"""
Domain events: the immutable records the event ledger stores and replays.

Each event is a frozen dataclass tagged by `ACTION`. Fill events carry deltas
(quantity and amount newly filled since the previous observation) so that
folding them is additive, and their ids are derived from the venue order id so
that the same observation produced twice collides on `event_id`.

Wire format (one JSON object per line):

    {"timestamp": "2024-05-01T12:00:00.000Z", "ts_ms": 1714564800000,
     "action": "ORDER_FILLED", "instrument": "SOL_USDC", "event_id": "fill:123",
     "orderId": "123", "side": "BUY", "price": 150.0, "quantity": 0.1,
     "amount": 15.0, "cumulativeQuantity": 0.1}
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type, Union

from src.core.errors import ValidationError
from src.core.utils import iso_to_ms, ms_to_iso, normalize_symbol, now_ms, to_float

# override reasons recorded for audit; folds skip them
REASON_UNRESOLVABLE = "reconcile_unresolvable"
AUDIT_ONLY_REASONS = frozenset({REASON_UNRESOLVABLE})


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        """Accepts BUY/SELL as well as the venue's Bid/Ask."""
        raw = str(value or "").strip().upper()
        if raw in ("BUY", "BID", "B"):
            return cls.BUY
        if raw in ("SELL", "ASK", "S", "A"):
            return cls.SELL
        raise ValidationError(f"unknown side {value!r}")


class EventAction(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_PARTIALLY_FILLED = "ORDER_PARTIALLY_FILLED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    POSITION_DETECTED = "POSITION_DETECTED"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"


def _qty_key(value: float) -> str:
    return f"{value:.12g}"


def fill_event_id(order_id: str) -> str:
    return f"fill:{order_id}"


def partial_event_id(order_id: str, cumulative_quantity: float) -> str:
    return f"partial:{order_id}:{_qty_key(cumulative_quantity)}"


def override_event_id(instrument: str, ts_ms: int) -> str:
    return f"override:{normalize_symbol(instrument)}:{ts_ms}:{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class DomainEvent:
    event_id: str
    instrument: str
    timestamp_ms: int

    ACTION: ClassVar[EventAction]

    @property
    def action(self) -> EventAction:
        return self.ACTION

    def _fields(self) -> Dict[str, Any]:
        return {}

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "timestamp": ms_to_iso(self.timestamp_ms),
            "ts_ms": self.timestamp_ms,
            "action": self.ACTION.value,
            "instrument": self.instrument,
            "event_id": self.event_id,
        }
        record.update(self._fields())
        return record


@dataclass(frozen=True)
class OrderCreated(DomainEvent):
    order_id: str
    side: Side
    price: float
    quantity: float

    ACTION: ClassVar[EventAction] = EventAction.ORDER_CREATED

    def _fields(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class _FillEvent(DomainEvent):
    order_id: str
    side: Side
    price: float
    quantity: float  # delta
    amount: float  # delta
    cumulative_quantity: float

    def _fields(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "amount": self.amount,
            "cumulativeQuantity": self.cumulative_quantity,
        }


@dataclass(frozen=True)
class OrderPartiallyFilled(_FillEvent):
    ACTION: ClassVar[EventAction] = EventAction.ORDER_PARTIALLY_FILLED


@dataclass(frozen=True)
class OrderFilled(_FillEvent):
    ACTION: ClassVar[EventAction] = EventAction.ORDER_FILLED


@dataclass(frozen=True)
class OrderCancelled(DomainEvent):
    order_id: str
    filled_quantity: float = 0.0

    ACTION: ClassVar[EventAction] = EventAction.ORDER_CANCELLED

    def _fields(self) -> Dict[str, Any]:
        return {"orderId": self.order_id, "filledQuantity": self.filled_quantity}


@dataclass(frozen=True)
class PositionDetected(DomainEvent):
    """The venue holds a position the ledger has no history for."""

    quantity: float
    amount: float
    price: float
    price_source: str

    ACTION: ClassVar[EventAction] = EventAction.POSITION_DETECTED

    def _fields(self) -> Dict[str, Any]:
        return {
            "quantity": self.quantity,
            "amount": self.amount,
            "price": self.price,
            "priceSource": self.price_source,
        }


@dataclass(frozen=True)
class ManualOverride(DomainEvent):
    """Sets the position aggregate to absolute values.

    Emitted for drift corrections, for unresolvable drift (values unchanged,
    kept for audit) and for fresh-start / cycle resets (values zero).
    """

    quantity: float
    amount: float
    order_count: int
    reason: str
    drift: float = 0.0
    reference_price: Optional[float] = None
    price_source: Optional[str] = None
    previous_quantity: float = 0.0
    previous_amount: float = 0.0

    ACTION: ClassVar[EventAction] = EventAction.MANUAL_OVERRIDE

    @property
    def audit_only(self) -> bool:
        """True for records that document a decision without changing the aggregate."""
        return self.reason in AUDIT_ONLY_REASONS

    def _fields(self) -> Dict[str, Any]:
        return {
            "quantity": self.quantity,
            "amount": self.amount,
            "orderCount": self.order_count,
            "reason": self.reason,
            "drift": self.drift,
            "referencePrice": self.reference_price,
            "priceSource": self.price_source,
            "previousQuantity": self.previous_quantity,
            "previousAmount": self.previous_amount,
        }


AnyEvent = Union[
    OrderCreated, OrderPartiallyFilled, OrderFilled, OrderCancelled, PositionDetected, ManualOverride
]

EVENT_TYPES: Dict[str, Type[DomainEvent]] = {
    cls.ACTION.value: cls
    for cls in (OrderCreated, OrderPartiallyFilled, OrderFilled, OrderCancelled, PositionDetected, ManualOverride)
}


def _num(record: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = to_float(record.get(key))
    if value is None:
        if default is not None and record.get(key) is None:
            return default
        raise ValidationError(f"field {key!r} missing or not a finite number: {record.get(key)!r}")
    return value


def _str(record: Dict[str, Any], key: str) -> str:
    value = record.get(key)
    if value is None or value == "":
        raise ValidationError(f"field {key!r} missing")
    return str(value)


def from_record(record: Dict[str, Any]) -> DomainEvent:
    """Parse a ledger record. Raises ValidationError on any malformed field."""
    if not isinstance(record, dict):
        raise ValidationError(f"record is not an object: {type(record).__name__}")
    action = record.get("action")
    cls = EVENT_TYPES.get(str(action))
    if cls is None:
        raise ValidationError(f"unknown action {action!r}")

    ts_ms = record.get("ts_ms")
    if ts_ms is None:
        try:
            ts_ms = iso_to_ms(_str(record, "timestamp"))
        except ValueError as exc:
            raise ValidationError(f"bad timestamp {record.get('timestamp')!r}") from exc
    try:
        ts_ms = int(ts_ms)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"bad ts_ms {ts_ms!r}") from exc

    base = {
        "event_id": _str(record, "event_id"),
        "instrument": normalize_symbol(_str(record, "instrument")),
        "timestamp_ms": ts_ms,
    }

    if cls is OrderCreated:
        return OrderCreated(
            **base,
            order_id=_str(record, "orderId"),
            side=Side.parse(record.get("side")),
            price=_num(record, "price"),
            quantity=_num(record, "quantity"),
        )
    if cls in (OrderPartiallyFilled, OrderFilled):
        return cls(
            **base,
            order_id=_str(record, "orderId"),
            side=Side.parse(record.get("side")),
            price=_num(record, "price"),
            quantity=_num(record, "quantity"),
            amount=_num(record, "amount"),
            cumulative_quantity=_num(record, "cumulativeQuantity"),
        )
    if cls is OrderCancelled:
        return OrderCancelled(
            **base,
            order_id=_str(record, "orderId"),
            filled_quantity=_num(record, "filledQuantity", default=0.0),
        )
    if cls is PositionDetected:
        return PositionDetected(
            **base,
            quantity=_num(record, "quantity"),
            amount=_num(record, "amount"),
            price=_num(record, "price"),
            price_source=str(record.get("priceSource") or "unknown"),
        )
    ref = record.get("referencePrice")
    return ManualOverride(
        **base,
        quantity=_num(record, "quantity"),
        amount=_num(record, "amount"),
        order_count=int(_num(record, "orderCount")),
        reason=str(record.get("reason") or ""),
        drift=_num(record, "drift", default=0.0),
        reference_price=to_float(ref) if ref is not None else None,
        price_source=record.get("priceSource"),
        previous_quantity=_num(record, "previousQuantity", default=0.0),
        previous_amount=_num(record, "previousAmount", default=0.0),
    )


def make_override(
    instrument: str,
    quantity: float,
    amount: float,
    order_count: int,
    reason: str,
    *,
    drift: float = 0.0,
    reference_price: Optional[float] = None,
    price_source: Optional[str] = None,
    previous_quantity: float = 0.0,
    previous_amount: float = 0.0,
    timestamp_ms: Optional[int] = None,
) -> ManualOverride:
    ts = timestamp_ms if timestamp_ms is not None else now_ms()
    return ManualOverride(
        event_id=override_event_id(instrument, ts),
        instrument=normalize_symbol(instrument),
        timestamp_ms=ts,
        quantity=quantity,
        amount=amount,
        order_count=order_count,
        reason=reason,
        drift=drift,
        reference_price=reference_price,
        price_source=price_source,
        previous_quantity=previous_quantity,
        previous_amount=previous_amount,
    )
