"""
PositionStats: the derived position projection.

Folded from domain events, either live (one event at a time as the order
ledger commits them) or by replaying the event ledger. Both paths go through
`apply_event`, so a rebuilt projection is bit-identical to the live one.

Fold rules:
    PARTIALLY_FILLED / FILLED  buy: +quantity, +amount
                               sell: -quantity, amount reduced at average cost
    FILLED                     additionally +1 filled order
    POSITION_DETECTED          +quantity, +amount, +1 order
    MANUAL_OVERRIDE            absolute quantity, amount and order count
                               (audit-only overrides: no effect)
    CREATED / CANCELLED        no effect
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Optional, Set

from src.core.json_utils import dumps
from src.state.domain_events import (
    DomainEvent,
    ManualOverride,
    OrderFilled,
    OrderPartiallyFilled,
    PositionDetected,
    Side,
)

if TYPE_CHECKING:
    from src.state.event_ledger import EventLedger

log = logging.getLogger("dcabot")


@dataclass(frozen=True)
class PositionSnapshot:
    """Immutable view handed to strategy and display collaborators."""
    instrument: str
    quantity: float
    amount: float
    average_price: float
    order_count: int
    last_update_ms: int

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "quantity": self.quantity,
            "amount": self.amount,
            "averagePrice": self.average_price,
            "orderCount": self.order_count,
            "lastUpdate": self.last_update_ms,
        }


@dataclass(frozen=True)
class ProfitView:
    current_value: float
    profit: float
    profit_pct: float


class PositionStats:
    def __init__(self, instrument: str) -> None:
        self.instrument = instrument
        self.total_filled_quantity: float = 0.0
        self.total_filled_amount: float = 0.0
        self.filled_order_count: int = 0
        self.processed_event_ids: Set[str] = set()
        self.last_update_ms: int = 0
        # bumped on every change; lets a reader tell whether the fold moved
        self.version: int = 0

    @property
    def average_price(self) -> float:
        if self.total_filled_quantity <= 0:
            return 0.0
        return self.total_filled_amount / self.total_filled_quantity

    def reset(self) -> None:
        self.total_filled_quantity = 0.0
        self.total_filled_amount = 0.0
        self.filled_order_count = 0
        self.processed_event_ids = set()
        self.last_update_ms = 0
        self.version += 1

    def apply_event(self, event: DomainEvent) -> bool:
        """Fold one event. Returns False if it was already applied or has no effect."""
        if event.instrument != self.instrument:
            return False
        if event.event_id in self.processed_event_ids:
            return False
        if isinstance(event, ManualOverride) and event.audit_only:
            return False

        if isinstance(event, (OrderPartiallyFilled, OrderFilled)):
            self._apply_fill(event)
        elif isinstance(event, PositionDetected):
            self.total_filled_quantity += event.quantity
            self.total_filled_amount += event.amount
            self.filled_order_count += 1
        elif isinstance(event, ManualOverride):
            self.total_filled_quantity = event.quantity
            self.total_filled_amount = event.amount
            self.filled_order_count = event.order_count
            if event.quantity == 0 and event.amount == 0 and event.order_count == 0:
                # a zeroing override starts a new cycle; older ids can never recur
                self.processed_event_ids = set()
        else:
            return False

        self.processed_event_ids.add(event.event_id)
        self.last_update_ms = max(self.last_update_ms, event.timestamp_ms)
        self.version += 1
        return True

    def _apply_fill(self, event: OrderPartiallyFilled | OrderFilled) -> None:
        if event.side is Side.BUY:
            self.total_filled_quantity += event.quantity
            self.total_filled_amount += event.amount
        else:
            held = self.total_filled_quantity
            if held > 0:
                sold = min(event.quantity, held)
                self.total_filled_amount -= self.total_filled_amount * (sold / held)
                self.total_filled_quantity = held - sold
            if self.total_filled_quantity <= 0:
                self.total_filled_quantity = 0.0
                self.total_filled_amount = 0.0
        if isinstance(event, OrderFilled):
            self.filled_order_count += 1

    def apply_all(self, events: Iterable[DomainEvent]) -> int:
        applied = 0
        for event in events:
            if self.apply_event(event):
                applied += 1
        return applied

    def rebuild_from_ledger(self, ledger: "EventLedger") -> int:
        """Clear and fold every replayed event for this instrument."""
        self.reset()
        applied = self.apply_all(ledger.replay(self.instrument))
        log.info(dumps({
            "event": "position_rebuilt",
            "instrument": self.instrument,
            "events_applied": applied,
            **self.snapshot().to_dict(),
        }))
        return applied

    def snapshot(self) -> PositionSnapshot:
        return PositionSnapshot(
            instrument=self.instrument,
            quantity=self.total_filled_quantity,
            amount=self.total_filled_amount,
            average_price=self.average_price,
            order_count=self.filled_order_count,
            last_update_ms=self.last_update_ms,
        )

    def calculate_profit(self, current_price: Optional[float]) -> Optional[ProfitView]:
        if not current_price or current_price <= 0 or self.total_filled_quantity <= 0:
            return None
        value = self.total_filled_quantity * current_price
        profit = value - self.total_filled_amount
        pct = (profit / self.total_filled_amount * 100) if self.total_filled_amount > 0 else 0.0
        return ProfitView(current_value=value, profit=profit, profit_pct=pct)
