"""
State package: domain events, the durable event ledger and the position projection.
"""

from src.state.domain_events import (
    DomainEvent,
    EventAction,
    ManualOverride,
    OrderCancelled,
    OrderCreated,
    OrderFilled,
    OrderPartiallyFilled,
    PositionDetected,
    Side,
)
from src.state.event_ledger import EventLedger
from src.state.ledger_archiver import LedgerArchiver
from src.state.position_stats import PositionSnapshot, PositionStats

__all__ = [
    "DomainEvent",
    "EventAction",
    "ManualOverride",
    "OrderCancelled",
    "OrderCreated",
    "OrderFilled",
    "OrderPartiallyFilled",
    "PositionDetected",
    "Side",
    "EventLedger",
    "LedgerArchiver",
    "PositionSnapshot",
    "PositionStats",
]
