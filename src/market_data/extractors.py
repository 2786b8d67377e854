"""
Pure extractors turning raw stream payloads into canonical events.

Each extractor takes a decoded message and returns a canonical event or None
when the shape is not its own. `normalize_message` tries them in
DEFAULT_EXTRACTORS order and returns the first hit. An extractor that
recognizes its shape but finds unusable fields raises ValidationError.

Ticker shapes seen on the same logical stream:
    {"stream": "ticker.SOL_USDC", "data": {"e": "ticker", "s": "SOL_USDC", "c": "150.1", "o": "148.0"}}
    {"e": "ticker", "s": "SOL_USDC", "c": "150.1"}
    {"symbol": "SOL_USDC", "price": "150.1"}            (also "lastPrice")
    {"result": {"data": [{"s": "SOL_USDC", "c": "150.1"}]}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from src.core.errors import ValidationError
from src.core.json_utils import loads
from src.core.utils import normalize_symbol, now_ms, to_float
from src.execution.order_ledger import OrderStatus
from src.state.domain_events import Side


@dataclass(frozen=True)
class PriceUpdate:
    symbol: str
    price: float
    change_pct: Optional[float] = None
    source: str = "stream"
    timestamp_ms: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "changePct": self.change_pct,
            "source": self.source,
            "timestamp": self.timestamp_ms,
        }


@dataclass(frozen=True)
class OrderUpdate:
    order_id: str
    symbol: str
    status: OrderStatus
    side: Optional[Side] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    filled_quantity: Optional[float] = None
    filled_amount: Optional[float] = None
    source: str = "stream"
    timestamp_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class BalanceUpdate:
    balances: Dict[str, float]
    source: str = "stream"
    timestamp_ms: int = field(default_factory=now_ms)

    # kept so the ingestor's symbol filter can treat every event alike
    symbol: str = ""


StreamEvent = Union[PriceUpdate, OrderUpdate, BalanceUpdate]
Extractor = Callable[[Any], Optional[StreamEvent]]

ORDER_EVENTS = frozenset({
    "orderAccepted",
    "orderCancelled",
    "orderExpired",
    "orderFill",
    "orderModified",
    "orderTriggered",
    "executionReport",
    "orderUpdate",
})
BALANCE_EVENTS = frozenset({"outboundAccountPosition", "balanceUpdate"})


def decode(raw: Union[str, bytes, Any]) -> Any:
    """Decode a raw frame. Non-JSON text yields None."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            return loads(raw)
        except ValueError:
            return None
    return raw


def is_control_message(msg: Any) -> bool:
    """PONG replies and subscription acknowledgements."""
    if isinstance(msg, str):
        return msg.strip().upper() == "PONG"
    if not isinstance(msg, dict):
        return False
    result = msg.get("result")
    if isinstance(result, str) and result.upper() == "PONG":
        return True
    if str(msg.get("op", "")).lower() == "pong":
        return True
    # {"id": 1, "result": null} style acks
    return "id" in msg and "result" in msg and result is None


def _timestamp_ms(value: Any) -> int:
    ts = to_float(value)
    if ts is None or ts <= 0:
        return now_ms()
    # engine timestamps are microseconds
    if ts > 1e14:
        return int(ts // 1000)
    return int(ts)


def _payload(msg: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(msg, dict):
        return None
    data = msg.get("data")
    return data if isinstance(data, dict) else msg


def extract_order_update(msg: Any) -> Optional[OrderUpdate]:
    data = _payload(msg)
    if data is None:
        return None
    stream = str(msg.get("stream", ""))
    event = data.get("e")
    if event not in ORDER_EVENTS and not stream.startswith("account.orderUpdate"):
        return None

    oid = data.get("i") or data.get("orderId")
    if not oid:
        raise ValidationError(f"order update without id: {data!r}")
    symbol = data.get("s") or data.get("symbol")
    if not symbol:
        raise ValidationError(f"order update {oid} without symbol")

    status_raw = data.get("X")
    if status_raw:
        status = OrderStatus.parse(status_raw)
    elif event in ("orderCancelled", "orderExpired"):
        status = OrderStatus.CANCELLED
    elif event == "orderFill":
        status = OrderStatus.PARTIALLY_FILLED
    else:
        status = OrderStatus.NEW

    side = Side.parse(data["S"]) if data.get("S") else None
    price = to_float(data.get("p"))
    quantity = to_float(data.get("q"))
    filled = to_float(data.get("z"))
    amount = to_float(data.get("Z"))
    if filled is not None and filled < 0:
        raise ValidationError(f"order update {oid}: negative executed quantity {filled}")
    if status is OrderStatus.PARTIALLY_FILLED and quantity and filled is not None and filled >= quantity:
        status = OrderStatus.FILLED

    return OrderUpdate(
        order_id=str(oid),
        symbol=normalize_symbol(str(symbol)),
        status=status,
        side=side,
        price=price,
        quantity=quantity,
        filled_quantity=filled,
        filled_amount=amount,
        timestamp_ms=_timestamp_ms(data.get("T") or data.get("E")),
    )


def extract_balance_update(msg: Any) -> Optional[BalanceUpdate]:
    data = _payload(msg)
    if data is None or data.get("e") not in BALANCE_EVENTS:
        return None
    entries = data.get("B")
    if not isinstance(entries, list):
        raise ValidationError("balance update without B list")
    balances: Dict[str, float] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("a"):
            continue
        free = to_float(entry.get("f")) or 0.0
        locked = to_float(entry.get("l")) or 0.0
        balances[str(entry["a"]).upper()] = free + locked
    return BalanceUpdate(balances=balances, timestamp_ms=_timestamp_ms(data.get("E")))


def _ticker_from(symbol: Any, close: Any, open_: Any = None, ts: Any = None) -> PriceUpdate:
    price = to_float(close)
    if price is None or price <= 0:
        raise ValidationError(f"ticker for {symbol!r} has unusable price {close!r}")
    change = None
    open_px = to_float(open_)
    if open_px:
        change = (price - open_px) / open_px * 100
    return PriceUpdate(
        symbol=normalize_symbol(str(symbol)),
        price=price,
        change_pct=change,
        source="stream",
        timestamp_ms=_timestamp_ms(ts),
    )


def extract_envelope_ticker(msg: Any) -> Optional[PriceUpdate]:
    if not isinstance(msg, dict) or not str(msg.get("stream", "")).startswith("ticker."):
        return None
    data = msg.get("data")
    if not isinstance(data, dict) or "c" not in data:
        return None
    symbol = data.get("s") or str(msg["stream"]).split(".", 1)[1]
    return _ticker_from(symbol, data.get("c"), data.get("o"), data.get("E"))


def extract_flat_ticker(msg: Any) -> Optional[PriceUpdate]:
    if not isinstance(msg, dict) or "s" not in msg or "c" not in msg:
        return None
    if msg.get("e") not in (None, "ticker"):
        return None
    return _ticker_from(msg["s"], msg["c"], msg.get("o"), msg.get("E"))


def extract_symbol_price(msg: Any) -> Optional[PriceUpdate]:
    if not isinstance(msg, dict) or "symbol" not in msg:
        return None
    close = msg.get("price", msg.get("lastPrice"))
    if close is None:
        return None
    return _ticker_from(msg["symbol"], close, msg.get("open") or msg.get("firstPrice"), msg.get("timestamp"))


def extract_result_data_ticker(msg: Any) -> Optional[PriceUpdate]:
    if not isinstance(msg, dict) or not isinstance(msg.get("result"), dict):
        return None
    rows = msg["result"].get("data")
    if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
        return None
    row = rows[0]
    if "s" not in row or "c" not in row:
        return None
    return _ticker_from(row["s"], row["c"], row.get("o"), row.get("E"))


DEFAULT_EXTRACTORS: Sequence[Extractor] = (
    extract_order_update,
    extract_balance_update,
    extract_envelope_ticker,
    extract_flat_ticker,
    extract_symbol_price,
    extract_result_data_ticker,
)


def normalize_message(msg: Any, extractors: Sequence[Extractor] = DEFAULT_EXTRACTORS) -> Optional[StreamEvent]:
    """First extractor hit wins. Returns None for unrecognized shapes."""
    for extractor in extractors:
        event = extractor(msg)
        if event is not None:
            return event
    return None


def extractor_names(extractors: Sequence[Extractor] = DEFAULT_EXTRACTORS) -> List[str]:
    return [e.__name__ for e in extractors]
