"""
Core utilities package: errors, JSON helpers, time/symbol helpers and the event bus.
"""

from src.core.errors import (
    CircuitOpenError,
    DurabilityError,
    EngineError,
    GovernorShutdown,
    GovernorTimeout,
    RateLimited,
    TransientNetworkError,
    UnresolvableReconciliation,
    ValidationError,
    VenueError,
)
from src.core.event_bus import Event, EventBus, EventType, Subscription
from src.core.utils import normalize_symbol, now_ms, symbols_match

__all__ = [
    "CircuitOpenError",
    "DurabilityError",
    "EngineError",
    "GovernorShutdown",
    "GovernorTimeout",
    "RateLimited",
    "TransientNetworkError",
    "UnresolvableReconciliation",
    "ValidationError",
    "VenueError",
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "normalize_symbol",
    "now_ms",
    "symbols_match",
]
