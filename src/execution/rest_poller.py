"""
RestPoller: REST fallback for the push feed.

Only used while the stream ingestor is degraded. Each poll fetches the ticker
and, when orders are pending, the open-order list; pending ids missing from it
are resolved with an order-status query. Results are converted into the same
canonical events the stream produces and handed to the caller's sink, so the
engine applies them through one path.

All calls go through VenueApi and therefore through the governor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

from src.core.errors import EngineError
from src.core.json_utils import dumps
from src.core.utils import normalize_symbol
from src.execution.venue_api import VenueApi, VenueOrder
from src.market_data.extractors import OrderUpdate, PriceUpdate, StreamEvent

log = logging.getLogger("dcabot")


@dataclass
class RestPollerConfig:
    poll_interval_sec: float = 5.0
    poll_orders: bool = True
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class PollResult:
    success: bool
    price: Optional[float] = None
    orders_checked: int = 0
    updates: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


def order_update_from(order: VenueOrder, source: str = "rest") -> OrderUpdate:
    return OrderUpdate(
        order_id=order.id,
        symbol=order.symbol,
        status=order.status,
        side=order.side,
        price=order.price,
        quantity=order.quantity,
        filled_quantity=order.filled_quantity,
        filled_amount=order.filled_amount,
        source=source,
        timestamp_ms=order.created_at,
    )


class RestPoller:
    """
    Usage:
        poller = RestPoller("SOL_USDC", api, pending_ids=order_ledger.pending_ids)
        result = await poller.poll_if_due(on_event=ctx.inbound.put_nowait)
    """

    def __init__(
        self,
        instrument: str,
        api: VenueApi,
        pending_ids: Optional[Callable[[], Iterable[str]]] = None,
        config: Optional[RestPollerConfig] = None,
    ) -> None:
        self.instrument = normalize_symbol(instrument)
        self.api = api
        self._pending_ids = pending_ids or (lambda: ())
        self.config = config or RestPollerConfig()
        self._last_poll_time: float = 0.0
        self.polls = 0
        self.errors = 0
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "instrument": self.instrument, **kwargs}))

    @property
    def is_poll_due(self) -> bool:
        return time.monotonic() - self._last_poll_time >= self.config.poll_interval_sec

    async def poll_if_due(
        self,
        on_event: Callable[[StreamEvent], Any],
        force: bool = False,
    ) -> PollResult:
        if not force and not self.is_poll_due:
            return PollResult(success=True)
        return await self.poll_once(on_event)

    async def poll_once(self, on_event: Callable[[StreamEvent], Any]) -> PollResult:
        """One poll. A failing query is recorded and skipped; whatever else was fetched is delivered."""
        start = time.monotonic()
        self._last_poll_time = start
        self.polls += 1
        events: List[StreamEvent] = []
        errors: List[str] = []
        checked = 0

        async def _guard(query: str, coro: Any) -> Any:
            try:
                return await coro
            except EngineError as exc:
                errors.append(f"{query}: {exc}")
                self._log_event("poll_error", level=logging.WARNING, query=query, err=str(exc),
                                err_type=type(exc).__name__)
                return None

        ticker = await _guard("ticker", self.api.ticker(self.instrument))
        if ticker is not None:
            events.append(PriceUpdate(
                symbol=ticker.symbol,
                price=ticker.last_price,
                change_pct=ticker.change_pct,
                source="rest",
            ))

        pending = set(self._pending_ids())
        if self.config.poll_orders and pending:
            listed = await _guard("open_orders", self.api.open_orders(self.instrument))
            if listed is not None:
                open_orders = {o.id: o for o in listed}
                for oid in sorted(pending):
                    checked += 1
                    order = open_orders.get(oid)
                    if order is None:
                        order = await _guard(f"order_status:{oid}", self.api.order_status(self.instrument, oid))
                    if order is not None:
                        events.append(order_update_from(order))

        for event in events:
            result = on_event(event)
            if asyncio.iscoroutine(result):
                await result

        if errors:
            self.errors += 1
        duration_ms = (time.monotonic() - start) * 1000
        price = events[0].price if events and isinstance(events[0], PriceUpdate) else None
        self._log_event(
            "rest_polled",
            level=logging.DEBUG,
            price=price,
            orders_checked=checked,
            updates=len(events),
            failed_queries=len(errors),
            duration_ms=round(duration_ms, 1),
        )
        return PollResult(
            success=not errors,
            price=price,
            orders_checked=checked,
            updates=len(events),
            error="; ".join(errors) or None,
            duration_ms=duration_ms,
        )

    def reset(self) -> None:
        self._last_poll_time = 0.0
