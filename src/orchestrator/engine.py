"""
Engine: the single owner of one instrument's state.

Everything that mutates the order ledger or the position projection runs on
one consumer task that drains `ctx.inbound`. Stream events land there
directly; operations that need the venue (place, cancel, reconcile) first do
their remote half through the governor on the caller's task, then hand the
local half to the consumer as a command and wait for its result.

Startup:
    1. open the event ledger (an unwritable ledger aborts startup)
    2. replay it into PositionStats and the OrderLedger
    3. start the consumer, the ingestor and the periodic reconciliation timer
    4. optional fresh start, then the startup reconciliation

Stop cancels the timer, stops the ingestor, lets the consumer finish what is
queued and, unless told otherwise, stops the governor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.core.errors import DurabilityError, EngineError, ValidationError
from src.core.event_bus import EventType
from src.core.json_utils import dumps
from src.engine_context import EngineContext
from src.execution.order_ledger import Order, OrderStatus
from src.execution.reconciliation_service import ReconciliationReport
from src.market_data.extractors import BalanceUpdate, OrderUpdate, PriceUpdate
from src.state.domain_events import (
    DomainEvent,
    ManualOverride,
    OrderCancelled,
    OrderCreated,
    OrderFilled,
    OrderPartiallyFilled,
    PositionDetected,
    Side,
    make_override,
)

log = logging.getLogger("dcabot")

_ORDER_EVENT_TYPES = {
    OrderCreated: EventType.ORDER_CREATED,
    OrderPartiallyFilled: EventType.ORDER_PARTIALLY_FILLED,
    OrderFilled: EventType.ORDER_FILLED,
    OrderCancelled: EventType.ORDER_CANCELLED,
}


@dataclass
class _Command:
    name: str
    run: Callable[[], Awaitable[Any]]
    future: asyncio.Future = field(repr=False, default=None)


@dataclass(frozen=True)
class PlaceResult:
    accepted: bool
    order: Optional[Order] = None
    reason: Optional[str] = None


class Engine:
    def __init__(self, ctx: EngineContext) -> None:
        self.ctx = ctx
        self.instrument = ctx.instrument
        self.last_balances: Dict[str, float] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: float = 0.0
        self._stats = {
            "stream_events": 0,
            "commands": 0,
            "rejected_updates": 0,
            "durability_errors": 0,
            "handler_errors": 0,
        }
        ctx.order_ledger.add_listener(self._on_domain_event)
        ctx.reconciler.add_listener(self._on_domain_event)
        ctx.reconciler.add_report_listener(self._on_report)

    def _log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "instrument": self.instrument, **kwargs}))

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def recover(self) -> int:
        """Replay the ledger into fresh projections. Returns the events replayed."""
        ctx = self.ctx
        events = list(ctx.event_ledger.replay())
        ctx.stats.reset()
        applied = ctx.stats.apply_all(events)
        restored = ctx.order_ledger.restore(events)
        ctx.metrics.ledger_skipped_records.labels(instrument=self.instrument).set(ctx.event_ledger.skipped_records)
        self._log(
            "engine_recovered",
            events=len(events),
            applied=applied,
            orders_restored=restored,
            pending=len(ctx.order_ledger.pending_ids()),
            skipped=ctx.event_ledger.skipped_records,
            **ctx.stats.snapshot().to_dict(),
        )
        self._publish_position()
        return len(events)

    async def start(self) -> None:
        if self._running:
            return
        ctx = self.ctx
        ctx.event_ledger.open()  # DurabilityError aborts startup
        self.recover()

        ctx.governor.start()
        self._running = True
        self._started_at = time.monotonic()
        self._consumer = asyncio.create_task(self._consume(), name=f"engine-{self.instrument}")
        ctx.ingestor.start()
        ctx.metrics.engine_started.labels(instrument=self.instrument).inc()

        if ctx.settings.fresh_start:
            await self.fresh_start()
        if ctx.settings.reconcile_on_startup:
            try:
                await self.reconcile("startup")
            except EngineError as exc:
                self._log("startup_reconcile_failed", level=logging.WARNING, err=str(exc))
        self._timer = asyncio.create_task(self._reconcile_loop(), name=f"reconcile-{self.instrument}")
        ctx.bus.emit_nowait(EventType.ENGINE_STARTED, source="engine", instrument=self.instrument)
        self._log("engine_started", fresh_start=ctx.settings.fresh_start)

    async def stop(self, stop_governor: bool = True, drain_timeout: float = 5.0) -> None:
        if not self._running:
            return
        ctx = self.ctx
        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
        await ctx.ingestor.stop()

        try:
            await asyncio.wait_for(ctx.inbound.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            self._log("engine_drain_timeout", level=logging.WARNING, remaining=ctx.inbound.qsize())
        self._running = False
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None
        self._fail_queued_commands()

        if stop_governor:
            await ctx.governor.stop()
        ctx.metrics.engine_stopped.labels(instrument=self.instrument).inc()
        ctx.bus.emit_nowait(EventType.ENGINE_STOPPED, source="engine", instrument=self.instrument)
        self._log("engine_stopped", **self._stats)

    def _fail_queued_commands(self) -> None:
        while not self.ctx.inbound.empty():
            item = self.ctx.inbound.get_nowait()
            self.ctx.inbound.task_done()
            if isinstance(item, _Command) and not item.future.done():
                item.future.set_exception(EngineError("engine stopped"))

    # ------------------------------------------------------------------
    # Sequential path
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        inbound = self.ctx.inbound
        while True:
            item = await inbound.get()
            try:
                await self._handle(item)
            except Exception as exc:
                # one bad item never takes the sequential path down
                self._stats["handler_errors"] += 1
                self._log("inbound_handler_error", level=logging.ERROR, err=str(exc),
                          err_type=type(exc).__name__, item_type=type(item).__name__)
            finally:
                inbound.task_done()

    async def _handle(self, item: Any) -> None:
        if isinstance(item, _Command):
            self._stats["commands"] += 1
            if item.future.done():
                return
            try:
                result = await item.run()
            except Exception as exc:
                # delivered to the awaiting caller, which decides what to do with it
                if not item.future.done():
                    item.future.set_exception(exc)
            else:
                if not item.future.done():
                    item.future.set_result(result)
            return

        self._stats["stream_events"] += 1
        try:
            if isinstance(item, PriceUpdate):
                self._apply_price(item)
            elif isinstance(item, OrderUpdate):
                await self._apply_order_update(item)
            elif isinstance(item, BalanceUpdate):
                self.last_balances.update(item.balances)
            else:
                self._log("inbound_unknown_item", level=logging.WARNING, item_type=type(item).__name__)
        except ValidationError as exc:
            self._stats["rejected_updates"] += 1
            self._log("update_rejected", level=logging.WARNING, err=str(exc), source=getattr(item, "source", None))
        except DurabilityError as exc:
            # nothing was committed; a later observation or reconciliation retries it
            self._stats["durability_errors"] += 1
            self._log("update_not_durable", level=logging.ERROR, err=str(exc))
            self.ctx.bus.emit_nowait(EventType.ENGINE_ERROR, source="engine", err=str(exc))

    async def run_on_path(self, name: str, run: Callable[[], Awaitable[Any]]) -> Any:
        """Execute `run` on the consumer task and return its result."""
        if not self._running:
            raise EngineError(f"engine for {self.instrument} is not running")
        fut = asyncio.get_running_loop().create_future()
        self.ctx.inbound.put_nowait(_Command(name=name, run=run, future=fut))
        return await fut

    def _apply_price(self, update: PriceUpdate) -> None:
        self.ctx.last_price = (update.price, time.monotonic())
        self.ctx.metrics.last_price.labels(instrument=self.instrument, source=update.source).set(update.price)
        self.ctx.bus.emit_nowait(
            EventType.PRICE_UPDATE,
            source=update.source,
            instrument=self.instrument,
            price=update.price,
            change_pct=update.change_pct,
        )

    async def _apply_order_update(self, update: OrderUpdate) -> None:
        ledger = self.ctx.order_ledger
        if ledger.get(update.order_id) is None:
            self._log("order_update_unknown", level=logging.DEBUG, order_id=update.order_id,
                      status=update.status.value)
            return
        if update.status is OrderStatus.NEW and not update.filled_quantity:
            return
        await ledger.apply_observation(
            update.order_id,
            update.status,
            update.filled_quantity,
            update.filled_amount,
        )

    # ------------------------------------------------------------------
    # Outbound notifications
    # ------------------------------------------------------------------

    def _on_domain_event(self, event: DomainEvent) -> None:
        m = self.ctx.metrics
        m.ledger_appends.labels(instrument=self.instrument, action=event.action.value).inc()
        event_type = _ORDER_EVENT_TYPES.get(type(event))
        if isinstance(event, OrderCreated):
            m.orders_registered.labels(instrument=self.instrument, side=event.side.value).inc()
        elif isinstance(event, (OrderPartiallyFilled, OrderFilled)):
            kind = "final" if isinstance(event, OrderFilled) else "partial"
            m.fills_applied.labels(instrument=self.instrument, side=event.side.value, kind=kind).inc()
        elif isinstance(event, OrderCancelled):
            m.orders_cancelled.labels(instrument=self.instrument).inc()
        m.pending_orders.labels(instrument=self.instrument).set(len(self.ctx.order_ledger.pending_ids()))
        if event_type is not None:
            self.ctx.bus.emit_nowait(event_type, source="ledger", **event.to_record())
        if isinstance(event, (OrderPartiallyFilled, OrderFilled, PositionDetected, ManualOverride)):
            self._publish_position()

    def _publish_position(self) -> None:
        snap = self.ctx.stats.snapshot()
        m = self.ctx.metrics
        m.position_quantity.labels(instrument=self.instrument).set(snap.quantity)
        m.position_amount.labels(instrument=self.instrument).set(snap.amount)
        m.position_average_price.labels(instrument=self.instrument).set(snap.average_price)
        self.ctx.bus.emit_nowait(EventType.POSITION_CHANGED, source="engine", **snap.to_dict())

    def _on_report(self, report: ReconciliationReport) -> None:
        m = self.ctx.metrics
        m.reconcile_runs.labels(instrument=self.instrument, action=report.action).inc()
        if report.real_balance is not None:
            m.reconcile_drift.labels(instrument=self.instrument).set(report.drift)
        self.ctx.bus.emit_nowait(EventType.RECONCILIATION_REPORT, source="reconciler", **report.to_dict())
        if report.action != "none":
            log.info(report.render())

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def reconcile(self, trigger: str = "manual") -> ReconciliationReport:
        started = time.monotonic()
        reconciler = self.ctx.reconciler
        view = await reconciler.fetch_remote()
        report = await self.run_on_path("reconcile", lambda: reconciler.apply(view, trigger))
        self.ctx.metrics.reconcile_duration_ms.labels(instrument=self.instrument).observe(
            (time.monotonic() - started) * 1000
        )
        return report

    async def _reconcile_loop(self) -> None:
        interval = max(1.0, self.ctx.reconciler.config.interval_sec)
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.reconcile("timer")
            except EngineError as exc:
                self._log("reconcile_failed", level=logging.WARNING, err=str(exc), err_type=type(exc).__name__)

    async def place_order(self, side: Side, price: float, quantity: float) -> PlaceResult:
        """Place a limit order unless an identical one is already pending."""
        ledger = self.ctx.order_ledger
        if ledger.has_pending_signature(price, quantity):
            self._log("place_rejected_duplicate", level=logging.WARNING, side=side.value, price=price, qty=quantity)
            self.ctx.metrics.orders_duplicate_rejected.labels(instrument=self.instrument).inc()
            return PlaceResult(accepted=False, reason="duplicate")

        placed = await self.ctx.api.create_order(self.instrument, side, price, quantity)
        order = placed.to_order()
        registered = await self.run_on_path("register", lambda: ledger.register(order))
        if not registered:
            # an identical order was registered while ours was in flight
            self._log("place_duplicate_cancelled", level=logging.WARNING, order_id=order.id)
            self.ctx.metrics.orders_duplicate_rejected.labels(instrument=self.instrument).inc()
            await self.ctx.api.cancel_order(self.instrument, order.id)
            return PlaceResult(accepted=False, order=order, reason="duplicate")
        return PlaceResult(accepted=True, order=ledger.get(order.id))

    async def cancel_order(self, order_id: str) -> bool:
        await self.ctx.api.cancel_order(self.instrument, order_id)
        return await self.run_on_path("cancel", lambda: self.ctx.order_ledger.apply_cancel(order_id))

    async def cancel_all(self) -> int:
        await self.ctx.api.cancel_all(self.instrument)

        async def _retire_all() -> int:
            count = 0
            for oid in sorted(self.ctx.order_ledger.pending_ids()):
                if await self.ctx.order_ledger.apply_cancel(oid):
                    count += 1
            return count

        return await self.run_on_path("cancel_all", _retire_all)

    async def reset_cycle(self, reason: str = "cycle_reset") -> ManualOverride:
        """Zero the position projection (a new accumulation cycle starts)."""

        async def _reset() -> ManualOverride:
            stats = self.ctx.stats
            event = make_override(
                self.instrument, 0.0, 0.0, 0, reason,
                previous_quantity=stats.total_filled_quantity,
                previous_amount=stats.total_filled_amount,
            )
            await self.ctx.event_ledger.append(event)
            stats.apply_event(event)
            self._on_domain_event(event)
            return event

        event = await self.run_on_path("reset_cycle", _reset)
        self._log("cycle_reset", reason=reason, event_id=event.event_id)
        return event

    async def fresh_start(self) -> ManualOverride:
        """Cancel everything on the venue and start from an empty position."""
        cancelled = await self.cancel_all()
        self._log("fresh_start", cancelled=cancelled)
        return await self.reset_cycle("fresh_start")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        ctx = self.ctx
        snap = ctx.stats.snapshot()
        price = ctx.last_price[0] if ctx.last_price else None
        profit = ctx.stats.calculate_profit(price)
        return {
            "instrument": self.instrument,
            "running": self._running,
            "uptime_sec": round(time.monotonic() - self._started_at, 1) if self._running else 0.0,
            "position": snap.to_dict(),
            "price": price,
            "profit": None if profit is None else {
                "currentValue": profit.current_value,
                "profit": profit.profit,
                "profitPct": profit.profit_pct,
            },
            "pending_orders": [o.to_dict() for o in ctx.order_ledger.pending_orders()],
            "orders": ctx.order_ledger.get_stats(),
            "stream": ctx.ingestor.get_status(),
            "governor": ctx.governor.get_status(),
            "reconciliation": ctx.reconciler.get_stats(),
            "ledger": {
                "appended": ctx.event_ledger.appended,
                "write_errors": ctx.event_ledger.write_errors,
                "skipped_records": ctx.event_ledger.skipped_records,
            },
            "inbound_queue": ctx.inbound.qsize(),
            **self._stats,
        }

    def pending_orders(self) -> List[Order]:
        return self.ctx.order_ledger.pending_orders()
