"""
Event Bus: outbound notifications from the engine.

Observers (display, alerting, metrics, strategy) subscribe to event types
instead of holding references into engine state. The engine publishes after
it has committed a change; handler failures are isolated and logged, never
propagated back into the sequential path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Union

from src.core.json_utils import dumps

log = logging.getLogger("dcabot")


class EventType(Enum):
    # market data
    PRICE_UPDATE = auto()

    # position
    POSITION_CHANGED = auto()
    RECONCILIATION_REPORT = auto()

    # order lifecycle
    ORDER_CREATED = auto()
    ORDER_PARTIALLY_FILLED = auto()
    ORDER_FILLED = auto()
    ORDER_CANCELLED = auto()
    ORDER_REJECTED = auto()

    # stream connection
    STREAM_CONNECTED = auto()
    STREAM_DISCONNECTED = auto()
    STREAM_DEGRADED = auto()
    STREAM_RECOVERED = auto()

    # governor circuit
    CIRCUIT_OPENED = auto()
    CIRCUIT_HALF_OPEN = auto()
    CIRCUIT_CLOSED = auto()

    # engine lifecycle
    ENGINE_STARTED = auto()
    ENGINE_STOPPED = auto()
    ENGINE_ERROR = auto()


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"Event({self.type.name}, ts={self.timestamp_ms}, source={self.source})"


Handler = Union[
    Callable[[Event], Coroutine[Any, Any, None]],
    Callable[[Event], None],
]


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # higher runs first
    filter_fn: Optional[Callable[[Event], bool]] = None
    name: Optional[str] = None


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.POSITION_CHANGED, on_position, priority=10)
        task = asyncio.create_task(bus.start())
        await bus.emit(EventType.PRICE_UPDATE, source="stream", price=150.2)
        ...
        bus.stop()
        await bus.drain()
    """

    DEFAULT_HISTORY_SIZE = 500

    def __init__(
        self,
        history_size: int = DEFAULT_HISTORY_SIZE,
        queue_size: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._subscribers: Dict[EventType, List[Subscription]] = {}
        self._global_subscribers: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(queue_size, 0))
        self._running = False
        self._history: Deque[Event] = deque(maxlen=history_size or None)
        self._history_enabled = history_size > 0
        self._stats = {
            "events_published": 0,
            "events_processed": 0,
            "events_dropped": 0,
            "handler_errors": 0,
            "queue_high_water": 0,
        }

    def _default_log(self, event: str, level: int = logging.DEBUG, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, **kwargs}))

    @staticmethod
    def _insert(subs: List[Subscription], sub: Subscription) -> None:
        idx = len(subs)
        for i, existing in enumerate(subs):
            if existing.priority < sub.priority:
                idx = i
                break
        subs.insert(idx, sub)

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert(self._subscribers.setdefault(event_type, []), sub)
        self._log(
            "event_bus_subscribe",
            event_type=event_type.name,
            handler_name=name or getattr(handler, "__name__", "handler"),
            priority=priority,
        )
        return sub

    def subscribe_all(
        self,
        handler: Handler,
        priority: int = 0,
        filter_fn: Optional[Callable[[Event], bool]] = None,
        name: Optional[str] = None,
    ) -> Subscription:
        """Global subscribers see every event, before type-specific ones."""
        sub = Subscription(handler=handler, priority=priority, filter_fn=filter_fn, name=name)
        self._insert(self._global_subscribers, sub)
        return sub

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        subs = self._global_subscribers if event_type is None else self._subscribers.get(event_type, [])
        if subscription in subs:
            subs.remove(subscription)
            return True
        return False

    def publish_nowait(self, event: Event) -> bool:
        """Queue an event. False (and counted as dropped) when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["events_dropped"] += 1
            self._log("event_bus_queue_full", level=logging.WARNING, event_type=event.type.name)
            return False
        self._stats["events_published"] += 1
        self._stats["queue_high_water"] = max(self._stats["queue_high_water"], self._queue.qsize())
        return True

    async def publish(self, event: Event) -> bool:
        return self.publish_nowait(event)

    async def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return self.publish_nowait(Event(type=event_type, data=data, source=source))

    def emit_nowait(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return self.publish_nowait(Event(type=event_type, data=data, source=source))

    async def start(self) -> None:
        """Process events until stop(). Run as a background task."""
        self._running = True
        self._log("event_bus_started")
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self._process_event(event)
        self._log("event_bus_stopped")

    async def _process_event(self, event: Event) -> None:
        if self._history_enabled:
            self._history.append(event)
        handlers = [*self._global_subscribers, *self._subscribers.get(event.type, [])]
        for sub in handlers:
            if sub.filter_fn and not sub.filter_fn(event):
                continue
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._stats["handler_errors"] += 1
                self._log(
                    "event_bus_handler_error",
                    level=logging.WARNING,
                    event_type=event.type.name,
                    handler_name=sub.name or "unknown",
                    err=str(exc),
                    err_type=type(exc).__name__,
                )
        self._stats["events_processed"] += 1

    def stop(self) -> None:
        self._running = False

    async def drain(self, timeout: float = 5.0) -> int:
        """Process whatever is queued, up to `timeout` seconds."""
        count = 0
        deadline = time.monotonic() + timeout
        while not self._queue.empty() and time.monotonic() < deadline:
            await self._process_event(self._queue.get_nowait())
            count += 1
        return count

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type is event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._subscribers.values()),
            "global_subscriber_count": len(self._global_subscribers),
            "running": self._running,
        }

    def get_subscriber_count(self, event_type: EventType) -> int:
        return len(self._subscribers.get(event_type, []))
