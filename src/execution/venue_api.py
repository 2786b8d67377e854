"""
VenueApi: typed venue operations, every one routed through the ApiGovernor.

    ticker / balances / open orders / order status   NORMAL
    order history                                    BACKGROUND
    create / cancel / cancel all                     CRITICAL

Order creation is never retried on transient errors (the order may have been
placed); rate-limited attempts are retried because the venue did not run them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol

from src.core.errors import ValidationError, VenueError
from src.core.json_utils import dumps
from src.core.utils import iso_to_ms, normalize_symbol, now_ms, to_float
from src.execution.api_governor import ApiGovernor, Priority
from src.execution.order_ledger import Order, OrderStatus
from src.execution.venue_client import VenueRequest, VenueResponse
from src.state.domain_events import Side

log = logging.getLogger("dcabot")


class CallExecutor(Protocol):
    async def execute(self, request: VenueRequest) -> VenueResponse: ...


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last_price: float
    change_pct: Optional[float] = None


@dataclass(frozen=True)
class Balance:
    asset: str
    available: float
    locked: float
    total: float


@dataclass(frozen=True)
class VenueOrder:
    """Order as reported by the venue (open orders, history, placement response)."""
    id: str
    symbol: str
    side: Side
    price: float
    quantity: float
    filled_quantity: float
    filled_amount: Optional[float]
    status: OrderStatus
    created_at: int

    def to_order(self) -> Order:
        return Order(
            id=self.id,
            instrument=self.symbol,
            side=self.side,
            price=self.price,
            quantity=self.quantity,
            filled_quantity=self.filled_quantity,
            filled_amount=self.filled_amount or 0.0,
            status=self.status,
            created_at=self.created_at,
        )


def parse_venue_order(raw: Dict[str, Any], default_status: OrderStatus = OrderStatus.NEW) -> VenueOrder:
    """Parse a REST order object. Raises ValidationError when id, price or quantity is unusable."""
    if not isinstance(raw, dict):
        raise ValidationError(f"order payload is not an object: {raw!r}")
    oid = raw.get("id") or raw.get("orderId")
    if not oid:
        raise ValidationError(f"order payload without id: {raw!r}")
    price = to_float(raw.get("price"))
    quantity = to_float(raw.get("quantity"))
    if price is None or quantity is None:
        raise ValidationError(f"order {oid}: unusable price/quantity {raw.get('price')!r}/{raw.get('quantity')!r}")
    filled = to_float(raw.get("executedQuantity"))
    amount = to_float(raw.get("executedQuoteQuantity"))
    status_raw = raw.get("status")
    created_ms = _parse_ts(raw.get("createdAt") or raw.get("timestamp"))
    return VenueOrder(
        id=str(oid),
        symbol=normalize_symbol(str(raw.get("symbol") or "")),
        side=Side.parse(raw.get("side")),
        price=price,
        quantity=quantity,
        filled_quantity=filled or 0.0,
        filled_amount=amount,
        status=OrderStatus.parse(status_raw) if status_raw else default_status,
        created_at=created_ms,
    )


def _parse_ts(value: Any) -> int:
    num = to_float(value)
    if num is not None:
        return int(num)
    if isinstance(value, str):
        try:
            return iso_to_ms(value)
        except ValueError:
            pass
    return now_ms()


def _parse_orders(data: Any, source: str) -> List[VenueOrder]:
    out: List[VenueOrder] = []
    for raw in data if isinstance(data, list) else []:
        try:
            out.append(parse_venue_order(raw))
        except ValidationError as exc:
            log.warning(dumps({"event": "venue_order_skipped", "source": source, "err": str(exc)}))
    return out


class VenueApi:
    def __init__(
        self,
        executor: CallExecutor,
        governor: ApiGovernor,
        timeout: Optional[float] = None,
        history_limit: int = 100,
    ) -> None:
        self.executor = executor
        self.governor = governor
        self.timeout = timeout
        self.history_limit = history_limit

    async def _call(self, request: VenueRequest, priority: Priority, label: str, **kwargs: Any) -> Any:
        async def _do() -> Any:
            resp = await self.executor.execute(request)
            return resp.data

        return await self.governor.submit(_do, priority, timeout=self.timeout, label=label, **kwargs)

    async def ticker(self, symbol: str) -> Ticker:
        sym = normalize_symbol(symbol)
        data = await self._call(
            VenueRequest("GET", "/api/v1/ticker", params={"symbol": sym}),
            Priority.NORMAL,
            "ticker",
        )
        if not isinstance(data, dict):
            raise ValidationError(f"ticker payload for {sym} is not an object")
        price = to_float(data.get("lastPrice"))
        if price is None or price <= 0:
            raise ValidationError(f"ticker for {sym} has no usable lastPrice: {data.get('lastPrice')!r}")
        change = to_float(data.get("priceChangePercent"))
        return Ticker(symbol=sym, last_price=price, change_pct=change)

    async def balances(self) -> Dict[str, Balance]:
        data = await self._call(
            VenueRequest("GET", "/api/v1/capital", instruction="balanceQuery", private=True),
            Priority.NORMAL,
            "balances",
        )
        if not isinstance(data, dict):
            raise ValidationError("balance payload is not an object")
        out: Dict[str, Balance] = {}
        for asset, entry in data.items():
            if not isinstance(entry, dict):
                continue
            available = to_float(entry.get("available")) or 0.0
            locked = to_float(entry.get("locked")) or 0.0
            total = to_float(entry.get("total"))
            if total is None:
                total = available + locked
            out[str(asset).upper()] = Balance(str(asset).upper(), available, locked, total)
        return out

    async def balance(self, asset: str) -> float:
        """Total (available + locked) holding of `asset`; 0 when the venue lists nothing."""
        balances = await self.balances()
        entry = balances.get(asset.upper())
        return entry.total if entry else 0.0

    async def open_orders(self, symbol: str) -> List[VenueOrder]:
        sym = normalize_symbol(symbol)
        data = await self._call(
            VenueRequest("GET", "/api/v1/orders", params={"symbol": sym}, instruction="orderQueryAll", private=True),
            Priority.NORMAL,
            "open_orders",
        )
        return _parse_orders(data, "open_orders")

    async def order_history(self, symbol: str, limit: Optional[int] = None) -> List[VenueOrder]:
        sym = normalize_symbol(symbol)
        data = await self._call(
            VenueRequest(
                "GET",
                "/wapi/v1/history/orders",
                params={"symbol": sym, "limit": limit or self.history_limit},
                instruction="orderHistoryQueryAll",
                private=True,
            ),
            Priority.BACKGROUND,
            "order_history",
        )
        return _parse_orders(data, "order_history")

    async def order_status(self, symbol: str, order_id: str) -> Optional[VenueOrder]:
        sym = normalize_symbol(symbol)
        try:
            data = await self._call(
                VenueRequest(
                    "GET", "/api/v1/order", params={"symbol": sym, "orderId": order_id},
                    instruction="orderQuery", private=True,
                ),
                Priority.NORMAL,
                "order_status",
            )
        except VenueError as exc:
            if exc.status == 404:
                return None
            raise
        return parse_venue_order(data) if isinstance(data, dict) else None

    async def create_order(
        self,
        symbol: str,
        side: Side,
        price: float,
        quantity: float,
        client_id: Optional[int] = None,
    ) -> VenueOrder:
        sym = normalize_symbol(symbol)
        body: Dict[str, Any] = {
            "symbol": sym,
            "side": "Bid" if side is Side.BUY else "Ask",
            "orderType": "Limit",
            "price": f"{price:.12g}",
            "quantity": f"{quantity:.12g}",
            "timeInForce": "GTC",
        }
        if client_id is not None:
            body["clientId"] = client_id
        data = await self._call(
            VenueRequest("POST", "/api/v1/order", body=body, instruction="orderExecute", private=True),
            Priority.CRITICAL,
            "create_order",
            retry_transient=False,
        )
        order = parse_venue_order(data if isinstance(data, dict) else {})
        if not order.symbol:
            order = replace(order, symbol=sym)
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> Any:
        return await self._call(
            VenueRequest(
                "DELETE", "/api/v1/order", body={"symbol": normalize_symbol(symbol), "orderId": order_id},
                instruction="orderCancel", private=True,
            ),
            Priority.CRITICAL,
            "cancel_order",
        )

    async def cancel_all(self, symbol: str) -> Any:
        return await self._call(
            VenueRequest(
                "DELETE", "/api/v1/orders", body={"symbol": normalize_symbol(symbol)},
                instruction="orderCancelAll", private=True,
            ),
            Priority.CRITICAL,
            "cancel_all",
        )
