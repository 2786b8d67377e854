"""
ReconciliationEngine: keeps the derived position consistent with the venue.

A pass has two halves:

    fetch_remote()   off the sequential path; every query goes through the
                     governor and a failing query is recorded, not raised
    apply(view)      on the sequential path; order sync first, then the
                     position check, then a ReconciliationReport

Position rules (drift = real balance - local quantity):

    |drift| <= tolerance   nothing to do
    drift > 0              priced at the local average price, else the market
                           price. Empty ledger -> PositionDetected, otherwise a
                           ManualOverride raising quantity to the balance,
                           amount by drift * price and the order count by one
    drift < 0              ManualOverride with quantity = balance and amount
                           reduced in the same proportion
    no reference price     UnresolvableReconciliation: an audit ManualOverride
                           with unchanged values is recorded, stats are kept
    fold moved since fetch the balance predates a local fill; deferred to the
                           next pass

Every corrective event is appended to the event ledger before it is folded
into PositionStats.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.config.per_instrument import ToleranceTable
from src.core.errors import EngineError, UnresolvableReconciliation, ValidationError
from src.core.json_utils import dumps
from src.core.utils import base_asset, normalize_symbol, now_ms
from src.execution.order_ledger import OrderLedger, OrderStatus
from src.execution.venue_api import VenueApi, VenueOrder
from src.state.domain_events import REASON_UNRESOLVABLE, DomainEvent, PositionDetected, make_override
from src.state.event_ledger import EventLedger
from src.state.position_stats import PositionStats

log = logging.getLogger("dcabot")

# float slack so a drift equal to the tolerance is not flagged
TOLERANCE_EPSILON = 1e-12


@dataclass
class ReconciliationConfig:
    interval_sec: float = 300.0
    market_price_max_age_sec: float = 60.0
    sync_orders: bool = True
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass(frozen=True)
class RemoteView:
    """Venue state captured by fetch_remote(). None means the query failed or was skipped."""
    instrument: str
    balance: Optional[float]
    market_price: Optional[float] = None
    price_source: Optional[str] = None
    open_orders: Optional[List[VenueOrder]] = None
    history: Optional[List[VenueOrder]] = None
    errors: Dict[str, str] = field(default_factory=dict)
    fetched_at_ms: int = field(default_factory=now_ms)
    # PositionStats.version when the fetch began
    stats_version: Optional[int] = None


@dataclass
class ReconciliationReport:
    instrument: str
    trigger: str
    timestamp_ms: int
    action: str = "none"
    real_balance: Optional[float] = None
    local_quantity: float = 0.0
    new_quantity: float = 0.0
    new_amount: float = 0.0
    new_order_count: int = 0
    drift: float = 0.0
    tolerance: float = 0.0
    reference_price: Optional[float] = None
    price_source: Optional[str] = None
    event_id: Optional[str] = None
    orders_resolved: int = 0
    orders_missing: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.action not in ("skipped", "unresolvable")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "trigger": self.trigger,
            "timestamp": self.timestamp_ms,
            "action": self.action,
            "realBalance": self.real_balance,
            "localQuantity": self.local_quantity,
            "newQuantity": self.new_quantity,
            "newAmount": self.new_amount,
            "newOrderCount": self.new_order_count,
            "drift": self.drift,
            "tolerance": self.tolerance,
            "referencePrice": self.reference_price,
            "priceSource": self.price_source,
            "eventId": self.event_id,
            "ordersResolved": self.orders_resolved,
            "ordersMissing": self.orders_missing,
            "errors": dict(self.errors),
        }

    def render(self) -> str:
        """Plain-text report for the log file and operator console."""
        lines = [
            f"===== reconciliation {self.instrument} ({self.trigger}) =====",
            f"action:          {self.action}",
        ]
        if self.real_balance is not None:
            lines += [
                f"venue balance:   {self.real_balance:.8f}",
                f"local quantity:  {self.local_quantity:.8f}",
                f"drift:           {self.drift:+.8f} (tolerance {self.tolerance:g})",
            ]
        if self.reference_price is not None:
            lines.append(f"reference price: {self.reference_price:.4f} ({self.price_source})")
        lines += [
            f"position now:    {self.new_quantity:.8f} for {self.new_amount:.4f}, {self.new_order_count} orders",
            f"orders resolved: {self.orders_resolved}, missing: {self.orders_missing}",
        ]
        for key, err in sorted(self.errors.items()):
            lines.append(f"error [{key}]:   {err}")
        return "\n".join(lines)


# (price, monotonic timestamp) of the freshest stream price, or None
PriceProvider = Callable[[], Optional[Tuple[float, float]]]


class ReconciliationEngine:
    """
    Usage:
        engine = ReconciliationEngine("SOL_USDC", api, stats, order_ledger, event_ledger, tolerances)
        view = await engine.fetch_remote()          # off the sequential path
        report = await engine.apply(view, "timer")  # on it
    """

    def __init__(
        self,
        instrument: str,
        api: VenueApi,
        stats: PositionStats,
        order_ledger: OrderLedger,
        event_ledger: EventLedger,
        tolerances: Optional[ToleranceTable] = None,
        price_provider: Optional[PriceProvider] = None,
        on_event: Optional[Callable[[DomainEvent], Any]] = None,
        on_report: Optional[Callable[[ReconciliationReport], Any]] = None,
        on_unresolvable: Optional[Callable[[UnresolvableReconciliation], Any]] = None,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.instrument = normalize_symbol(instrument)
        self.asset = base_asset(self.instrument)
        self.api = api
        self.stats = stats
        self.order_ledger = order_ledger
        self.event_ledger = event_ledger
        self.tolerances = tolerances or ToleranceTable()
        self._price_provider = price_provider
        self._listeners: List[Callable[[DomainEvent], Any]] = [on_event] if on_event else []
        self._report_listeners: List[Callable[[ReconciliationReport], Any]] = [on_report] if on_report else []
        self._on_unresolvable = on_unresolvable
        self.config = config or ReconciliationConfig()
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

        self.last_report: Optional[ReconciliationReport] = None
        self.passes = 0
        self.corrections = 0
        self.unresolved = 0

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "instrument": self.instrument, **kwargs}))

    def add_listener(self, listener: Callable[[DomainEvent], Any]) -> None:
        self._listeners.append(listener)

    def add_report_listener(self, listener: Callable[[ReconciliationReport], Any]) -> None:
        self._report_listeners.append(listener)

    @property
    def tolerance(self) -> float:
        return self.tolerances.tolerance(self.instrument)

    # ------------------------------------------------------------------
    # Fetch (off the sequential path)
    # ------------------------------------------------------------------

    async def fetch_remote(self) -> RemoteView:
        errors: Dict[str, str] = {}
        stats_version = self.stats.version

        async def _guard(key: str, coro: Any) -> Any:
            try:
                return await coro
            except EngineError as exc:
                errors[key] = f"{type(exc).__name__}: {exc}"
                self._log_event("reconcile_query_failed", level=logging.WARNING, query=key, err=str(exc))
                return None

        balance = await _guard("balance", self.api.balance(self.asset))
        price, source = self._stream_price()
        if price is None:
            ticker = await _guard("ticker", self.api.ticker(self.instrument))
            if ticker is not None:
                price, source = ticker.last_price, "ticker"

        open_orders: Optional[List[VenueOrder]] = None
        history: Optional[List[VenueOrder]] = None
        pending = self.order_ledger.pending_ids()
        if self.config.sync_orders and pending:
            open_orders = await _guard("open_orders", self.api.open_orders(self.instrument))
            if open_orders is not None and pending - {o.id for o in open_orders}:
                history = await _guard("order_history", self.api.order_history(self.instrument))

        return RemoteView(
            instrument=self.instrument,
            balance=balance,
            market_price=price,
            price_source=source,
            open_orders=open_orders,
            history=history,
            errors=errors,
            fetched_at_ms=self._clock(),
            stats_version=stats_version,
        )

    def _stream_price(self) -> Tuple[Optional[float], Optional[str]]:
        if self._price_provider is None:
            return None, None
        latest = self._price_provider()
        if latest is None:
            return None, None
        price, seen_at = latest
        if price <= 0 or time.monotonic() - seen_at > self.config.market_price_max_age_sec:
            return None, None
        return price, "stream"

    # ------------------------------------------------------------------
    # Apply (on the sequential path)
    # ------------------------------------------------------------------

    async def apply(self, view: RemoteView, trigger: str) -> ReconciliationReport:
        self.passes += 1
        report = ReconciliationReport(
            instrument=self.instrument,
            trigger=trigger,
            timestamp_ms=self._clock(),
            tolerance=self.tolerance,
            errors=dict(view.errors),
        )
        moved = view.stats_version is not None and view.stats_version != self.stats.version
        await self._sync_orders(view, report)

        if view.balance is None:
            report.action = "skipped"
            self._log_event("reconcile_skipped", level=logging.WARNING, trigger=trigger, errors=report.errors)
        elif moved:
            # a fill landed after the balance was read; the next pass compares fresh figures
            report.action = "deferred"
            self._log_event("reconcile_deferred", trigger=trigger, balance=view.balance,
                            local=self.stats.total_filled_quantity)
        else:
            await self._reconcile_position(view, view.balance, report)

        snap = self.stats.snapshot()
        report.new_quantity = snap.quantity
        report.new_amount = snap.amount
        report.new_order_count = snap.order_count
        self.last_report = report
        self._log_event("reconcile_report", **report.to_dict())
        for listener in self._report_listeners:
            result = listener(report)
            if asyncio.iscoroutine(result):
                await result
        return report

    async def reconcile(self, trigger: str = "manual") -> ReconciliationReport:
        return await self.apply(await self.fetch_remote(), trigger)

    async def _sync_orders(self, view: RemoteView, report: ReconciliationReport) -> None:
        if view.open_orders is None:
            return
        remote_open = {o.id: o for o in view.open_orders}
        history = {o.id: o for o in view.history or []}
        for oid in sorted(self.order_ledger.pending_ids()):
            remote = remote_open.get(oid) or history.get(oid)
            if remote is None:
                report.orders_missing += 1
                self._log_event("reconcile_order_missing", level=logging.WARNING, order_id=oid)
                continue
            status = remote.status
            if oid not in remote_open and not status.is_terminal:
                # gone from the book but history still says open: trust its fill figures only
                status = OrderStatus.PARTIALLY_FILLED if remote.filled_quantity > 0 else OrderStatus.NEW
            try:
                changed = await self.order_ledger.apply_observation(
                    oid, status, remote.filled_quantity, remote.filled_amount
                )
            except ValidationError as exc:
                report.errors[f"order:{oid}"] = str(exc)
                self._log_event("reconcile_order_invalid", level=logging.WARNING, order_id=oid, err=str(exc))
                continue
            if changed:
                report.orders_resolved += 1

    async def _reconcile_position(self, view: RemoteView, balance: float, report: ReconciliationReport) -> None:
        quantity = self.stats.total_filled_quantity
        amount = self.stats.total_filled_amount
        orders = self.stats.filled_order_count
        drift = balance - quantity
        report.real_balance = balance
        report.local_quantity = quantity
        report.drift = drift

        if abs(drift) <= report.tolerance + TOLERANCE_EPSILON:
            report.action = "none"
            return

        self._log_event(
            "reconcile_drift",
            level=logging.WARNING,
            balance=balance,
            local=quantity,
            drift=drift,
            tolerance=report.tolerance,
        )
        ts = self._clock()
        if drift < 0:
            new_quantity = max(0.0, balance)
            new_amount = max(0.0, amount * (new_quantity / quantity)) if quantity > 0 else 0.0
            event: DomainEvent = make_override(
                self.instrument, new_quantity, new_amount, orders, "reconcile_decrease",
                drift=drift, previous_quantity=quantity, previous_amount=amount, timestamp_ms=ts,
            )
            report.action = "override_decrease"
        else:
            try:
                price, source = self._reference_price(view, drift)
            except UnresolvableReconciliation as exc:
                await self._record_unresolvable(exc, report, ts)
                return
            report.reference_price, report.price_source = price, source
            if quantity <= 0 and orders == 0:
                event = PositionDetected(
                    event_id=f"detected:{self.instrument}:{ts}",
                    instrument=self.instrument,
                    timestamp_ms=ts,
                    quantity=drift,
                    amount=drift * price,
                    price=price,
                    price_source=source,
                )
                report.action = "position_detected"
            else:
                event = make_override(
                    self.instrument, balance, amount + drift * price, orders + 1, "reconcile_increase",
                    drift=drift, reference_price=price, price_source=source,
                    previous_quantity=quantity, previous_amount=amount, timestamp_ms=ts,
                )
                report.action = "override_increase"

        await self._commit(event)
        report.event_id = event.event_id
        self.corrections += 1

    def _reference_price(self, view: RemoteView, drift: float) -> Tuple[float, str]:
        avg = self.stats.average_price
        if avg > 0:
            return avg, "average_price"
        if view.market_price is not None and view.market_price > 0:
            return view.market_price, view.price_source or "market"
        raise UnresolvableReconciliation(
            self.instrument,
            drift,
            {"reason": "no reference price", "errors": dict(view.errors)},
        )

    async def _record_unresolvable(self, exc: UnresolvableReconciliation, report: ReconciliationReport, ts: int) -> None:
        self.unresolved += 1
        audit = make_override(
            self.instrument,
            self.stats.total_filled_quantity,
            self.stats.total_filled_amount,
            self.stats.filled_order_count,
            REASON_UNRESOLVABLE,
            drift=exc.drift,
            price_source="unavailable",
            previous_quantity=self.stats.total_filled_quantity,
            previous_amount=self.stats.total_filled_amount,
            timestamp_ms=ts,
        )
        # audit only: PositionStats never folds it, live or on replay
        await self.event_ledger.append(audit)
        report.action = "unresolvable"
        report.event_id = audit.event_id
        report.errors["reconcile"] = str(exc)
        self._log_event("reconcile_unresolvable", level=logging.ERROR, drift=exc.drift, details=exc.details)
        if self._on_unresolvable is not None:
            result = self._on_unresolvable(exc)
            if asyncio.iscoroutine(result):
                await result

    async def _commit(self, event: DomainEvent) -> None:
        await self.event_ledger.append(event)
        self.stats.apply_event(event)
        for listener in self._listeners:
            listener(event)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "passes": self.passes,
            "corrections": self.corrections,
            "unresolved": self.unresolved,
            "last_action": self.last_report.action if self.last_report else None,
        }
