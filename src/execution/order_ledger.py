"""
OrderLedger: sole owner of order state.

Orders enter through `register` once the venue has acknowledged a placement,
change only through `apply_fill` / `apply_cancel`, and leave the pending set
once terminal (they stay in history). Every change is appended to the event
ledger first; the in-memory order is updated only after the append succeeded,
so a DurabilityError leaves the ledger exactly as it was.

Fill observations are venue-cumulative. The ledger keeps the last cumulative
quantity and amount it has seen per order and emits deltas, so the same
observation arriving from the stream and from a polling pass is counted once.

Orders are frozen dataclasses; a new instance replaces the old one on every change.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from src.core.errors import ValidationError
from src.core.json_utils import dumps
from src.core.utils import normalize_symbol, now_ms
from src.state.domain_events import (
    DomainEvent,
    OrderCancelled,
    OrderCreated,
    OrderFilled,
    OrderPartiallyFilled,
    Side,
    fill_event_id,
    partial_event_id,
)
from src.state.event_ledger import EventLedger

log = logging.getLogger("dcabot")

# Venue rounding tolerance, relative to order quantity.
FILL_REL_TOLERANCE = 1e-9


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED)

    @classmethod
    def parse(cls, value: Any) -> "OrderStatus":
        """Venue spellings: New, PartiallyFilled, Filled, Cancelled/Canceled, Expired, Rejected."""
        raw = str(value or "").replace("_", "").replace(" ", "").upper()
        mapping = {
            "NEW": cls.NEW,
            "OPEN": cls.NEW,
            "PARTIALLYFILLED": cls.PARTIALLY_FILLED,
            "PARTIAL": cls.PARTIALLY_FILLED,
            "FILLED": cls.FILLED,
            "CANCELLED": cls.CANCELLED,
            "CANCELED": cls.CANCELLED,
            "EXPIRED": cls.CANCELLED,
            "REJECTED": cls.REJECTED,
        }
        try:
            return mapping[raw]
        except KeyError:
            raise ValidationError(f"unknown order status {value!r}") from None


def order_signature(price: float, quantity: float) -> str:
    return f"{price:.12g}_{quantity:.12g}"


@dataclass(frozen=True)
class Order:
    id: str
    instrument: str
    side: Side
    price: float
    quantity: float
    filled_quantity: float = 0.0
    filled_amount: float = 0.0
    status: OrderStatus = OrderStatus.NEW
    created_at: int = 0

    @property
    def signature(self) -> str:
        return order_signature(self.price, self.quantity)

    @property
    def remaining(self) -> float:
        return max(0.0, self.quantity - self.filled_quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "instrument": self.instrument,
            "side": self.side.value,
            "price": self.price,
            "quantity": self.quantity,
            "filledQuantity": self.filled_quantity,
            "filledAmount": self.filled_amount,
            "status": self.status.value,
            "createdAt": self.created_at,
        }


def _finite(name: str, value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} is not a number: {value!r}") from None
    if not math.isfinite(out):
        raise ValidationError(f"{name} is not finite: {value!r}")
    return out


class OrderLedger:
    """
    Registry of orders for one instrument with idempotent fill application.

    Usage:
        ledger = OrderLedger("SOL_USDC", event_ledger, on_event=stats.apply_event)
        await ledger.register(Order(id="123", instrument="SOL_USDC", side=Side.BUY,
                                    price=150.0, quantity=0.1))
        await ledger.apply_fill("123", 0.05, 7.5)   # partial, delta 0.05
        await ledger.apply_fill("123", 0.05, 7.5)   # same observation: no-op
        await ledger.apply_fill("123", 0.1, 15.0, OrderStatus.FILLED)
    """

    def __init__(
        self,
        instrument: str,
        event_ledger: EventLedger,
        on_event: Optional[Callable[[DomainEvent], Any]] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.instrument = normalize_symbol(instrument)
        self._event_ledger = event_ledger
        self._listeners: List[Callable[[DomainEvent], Any]] = [on_event] if on_event else []
        self._log_event = log_event or self._default_log
        self._clock = clock

        self._orders: Dict[str, Order] = {}
        self._pending: Set[str] = set()
        self._processed: Set[str] = set()
        self._signatures: Dict[str, str] = {}
        self._stats = {
            "registered": 0,
            "duplicates_rejected": 0,
            "fills_applied": 0,
            "fills_ignored": 0,
            "cancels_applied": 0,
        }

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "instrument": self.instrument, **kwargs}))

    def add_listener(self, listener: Callable[[DomainEvent], Any]) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_ids(self) -> Set[str]:
        return set(self._pending)

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(str(order_id))

    def pending_orders(self) -> List[Order]:
        return [self._orders[oid] for oid in sorted(self._pending)]

    def all_orders(self) -> List[Order]:
        return list(self._orders.values())

    def has_pending_signature(self, price: float, quantity: float) -> bool:
        return order_signature(price, quantity) in self._signatures

    def is_processed(self, order_id: str) -> bool:
        return str(order_id) in self._processed

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "pending": len(self._pending), "known": len(self._orders)}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _commit(self, event: DomainEvent) -> None:
        # Raises DurabilityError; callers mutate state only after this returns.
        await self._event_ledger.append(event)
        for listener in self._listeners:
            listener(event)

    async def register(self, order: Order) -> bool:
        """Track a newly placed order. False if it duplicates a pending (price, quantity)."""
        if not order.id:
            raise ValidationError("order has no venue id")
        price = _finite("price", order.price)
        quantity = _finite("quantity", order.quantity)
        if price <= 0 or quantity <= 0:
            raise ValidationError(f"order {order.id} has non-positive price/quantity ({price}, {quantity})")
        oid = str(order.id)

        if oid in self._orders:
            self._log_event("order_already_registered", order_id=oid)
            return False
        sig = order_signature(price, quantity)
        if sig in self._signatures:
            self._stats["duplicates_rejected"] += 1
            self._log_event(
                "order_duplicate_rejected",
                level=logging.WARNING,
                order_id=oid,
                pending_order_id=self._signatures[sig],
                signature=sig,
            )
            return False

        created_at = order.created_at or self._clock()
        fresh = Order(
            id=oid,
            instrument=self.instrument,
            side=order.side,
            price=price,
            quantity=quantity,
            created_at=created_at,
        )
        await self._commit(OrderCreated(
            event_id=f"created:{oid}",
            instrument=self.instrument,
            timestamp_ms=self._clock(),
            order_id=oid,
            side=order.side,
            price=price,
            quantity=quantity,
        ))
        self._orders[oid] = fresh
        self._pending.add(oid)
        self._signatures[sig] = oid
        self._stats["registered"] += 1
        self._log_event("order_registered", order_id=oid, side=order.side.value, price=price, qty=quantity)

        # Placement responses can already carry fills (marketable limit orders).
        if order.filled_quantity > 0 or order.status is OrderStatus.FILLED:
            await self.apply_fill(oid, order.filled_quantity, order.filled_amount or None, order.status)
        elif order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            await self.apply_cancel(oid, order.status)
        return True

    async def apply_fill(
        self,
        order_id: str,
        filled_qty: float,
        filled_amount: Optional[float] = None,
        new_status: Optional[OrderStatus] = None,
    ) -> bool:
        """Apply a venue-cumulative fill observation.

        Returns False when the order is unknown, already fully processed, or
        the observation adds nothing. Raises ValidationError for non-finite
        numbers, cumulative figures that go backwards, or fills beyond the
        order quantity.
        """
        oid = str(order_id)
        if oid in self._processed:
            self._stats["fills_ignored"] += 1
            return False
        order = self._orders.get(oid)
        if order is None:
            self._stats["fills_ignored"] += 1
            self._log_event("fill_unknown_order", level=logging.WARNING, order_id=oid, cumulative=filled_qty)
            return False

        cumulative = _finite("filled quantity", filled_qty)
        tol = order.quantity * FILL_REL_TOLERANCE
        status = new_status

        if status is OrderStatus.FILLED and cumulative <= tol:
            # venue reported Filled without an executed quantity
            cumulative = order.quantity
        if cumulative < -tol:
            raise ValidationError(f"order {oid}: negative cumulative fill {cumulative}")
        if cumulative > order.quantity + tol:
            raise ValidationError(f"order {oid}: cumulative fill {cumulative} exceeds quantity {order.quantity}")
        if status is None:
            status = OrderStatus.FILLED if cumulative >= order.quantity - tol else OrderStatus.PARTIALLY_FILLED
        if status is OrderStatus.FILLED:
            if cumulative < order.quantity - tol:
                raise ValidationError(
                    f"order {oid}: status Filled but cumulative {cumulative} < quantity {order.quantity}"
                )
            cumulative = order.quantity

        delta = cumulative - order.filled_quantity
        if delta < -tol:
            raise ValidationError(
                f"order {oid}: cumulative fill went backwards ({order.filled_quantity} -> {cumulative})"
            )
        delta = max(0.0, delta)

        if filled_amount is not None:
            cum_amount = _finite("filled amount", filled_amount)
            amount_delta = cum_amount - order.filled_amount
            if amount_delta < -(abs(order.filled_amount) * FILL_REL_TOLERANCE):
                raise ValidationError(
                    f"order {oid}: cumulative amount went backwards ({order.filled_amount} -> {cum_amount})"
                )
            amount_delta = max(0.0, amount_delta)
            if delta > 0 and amount_delta == 0:
                amount_delta = delta * order.price
                cum_amount = order.filled_amount + amount_delta
        else:
            amount_delta = delta * order.price
            cum_amount = order.filled_amount + amount_delta

        if status is not OrderStatus.FILLED and delta == 0:
            self._stats["fills_ignored"] += 1
            return False

        fields = dict(
            instrument=self.instrument,
            timestamp_ms=self._clock(),
            order_id=oid,
            side=order.side,
            price=order.price,
            quantity=delta,
            amount=amount_delta,
            cumulative_quantity=cumulative,
        )
        if status is OrderStatus.FILLED:
            event: DomainEvent = OrderFilled(event_id=fill_event_id(oid), **fields)
        else:
            event = OrderPartiallyFilled(event_id=partial_event_id(oid, cumulative), **fields)
        await self._commit(event)

        next_status = status
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            # late fill observation for an order already cancelled
            next_status = order.status
        self._orders[oid] = replace(
            order, filled_quantity=cumulative, filled_amount=cum_amount, status=next_status
        )
        self._stats["fills_applied"] += 1
        if status is OrderStatus.FILLED:
            self._processed.add(oid)
            self._retire(oid)
        self._log_event(
            "order_filled" if status is OrderStatus.FILLED else "order_partially_filled",
            order_id=oid,
            side=order.side.value,
            delta_qty=delta,
            delta_amount=amount_delta,
            cumulative=cumulative,
        )
        return True

    async def apply_cancel(self, order_id: str, status: OrderStatus = OrderStatus.CANCELLED) -> bool:
        """Retire a pending order. Fills already applied are kept; stats are unaffected."""
        oid = str(order_id)
        order = self._orders.get(oid)
        if order is None or oid not in self._pending:
            return False
        if status not in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            status = OrderStatus.CANCELLED
        await self._commit(OrderCancelled(
            event_id=f"cancel:{oid}",
            instrument=self.instrument,
            timestamp_ms=self._clock(),
            order_id=oid,
            filled_quantity=order.filled_quantity,
        ))
        self._orders[oid] = replace(order, status=status)
        self._retire(oid)
        self._stats["cancels_applied"] += 1
        self._log_event("order_cancelled", order_id=oid, filled_qty=order.filled_quantity, status=status.value)
        return True

    async def apply_observation(
        self,
        order_id: str,
        status: OrderStatus,
        filled_qty: Optional[float] = None,
        filled_amount: Optional[float] = None,
    ) -> bool:
        """Apply a venue status report: fills first, then cancellation if terminal."""
        changed = False
        oid = str(order_id)
        order = self._orders.get(oid)
        if order is None:
            self._log_event("observation_unknown_order", order_id=oid, status=status.value)
            return False
        if status is OrderStatus.FILLED:
            return await self.apply_fill(oid, filled_qty or 0.0, filled_amount, OrderStatus.FILLED)
        if filled_qty is not None and filled_qty > order.filled_quantity:
            fill_status = OrderStatus.PARTIALLY_FILLED
            if filled_qty >= order.quantity * (1 - FILL_REL_TOLERANCE):
                fill_status = OrderStatus.FILLED
            changed = await self.apply_fill(oid, filled_qty, filled_amount, fill_status)
        if status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            changed = await self.apply_cancel(oid, status) or changed
        return changed

    def _retire(self, order_id: str) -> None:
        self._pending.discard(order_id)
        for sig, oid in list(self._signatures.items()):
            if oid == order_id:
                del self._signatures[sig]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def restore(self, events: Iterable[DomainEvent]) -> int:
        """Rebuild the order index from replayed events without appending anything."""
        count = 0
        for event in events:
            if event.instrument != self.instrument:
                continue
            if isinstance(event, OrderCreated):
                if event.order_id in self._orders:
                    continue
                self._orders[event.order_id] = Order(
                    id=event.order_id,
                    instrument=self.instrument,
                    side=event.side,
                    price=event.price,
                    quantity=event.quantity,
                    created_at=event.timestamp_ms,
                )
                self._pending.add(event.order_id)
                self._signatures[order_signature(event.price, event.quantity)] = event.order_id
            elif isinstance(event, (OrderPartiallyFilled, OrderFilled)):
                order = self._orders.get(event.order_id)
                if order is None or event.order_id in self._processed:
                    continue
                status = OrderStatus.FILLED if isinstance(event, OrderFilled) else OrderStatus.PARTIALLY_FILLED
                if order.status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
                    status = order.status
                self._orders[event.order_id] = replace(
                    order,
                    filled_quantity=event.cumulative_quantity,
                    filled_amount=order.filled_amount + event.amount,
                    status=status,
                )
                if isinstance(event, OrderFilled):
                    self._processed.add(event.order_id)
                    self._retire(event.order_id)
            elif isinstance(event, OrderCancelled):
                order = self._orders.get(event.order_id)
                if order is None:
                    continue
                self._orders[event.order_id] = replace(order, status=OrderStatus.CANCELLED)
                self._retire(event.order_id)
            else:
                continue
            count += 1
        self._log_event("order_ledger_restored", events=count, pending=len(self._pending), known=len(self._orders))
        return count
