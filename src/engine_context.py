"""
Explicit dependency wiring for the engine.

SharedServices are created once per process and shared by every instrument on
the venue: HTTP client, governor, event bus, metrics, alerts, ledger
archiver. EngineContext holds one instrument's ledger, projections, venue
API, ingestor and reconciler, plus the inbound queue its engine consumes.

There are no module-level singletons; resetting an instrument means building
a new EngineContext.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Optional, Set, Tuple

import httpx

from src.alerting import AlertConfig, AlertManager
from src.config.config import Settings
from src.config.per_instrument import ToleranceTable, load_per_instrument_overrides
from src.core.event_bus import EventBus, EventType
from src.core.json_utils import dumps
from src.core.utils import normalize_symbol
from src.execution.api_governor import ApiGovernor, GovernorConfig
from src.execution.order_ledger import OrderLedger
from src.execution.reconciliation_service import ReconciliationConfig, ReconciliationEngine
from src.execution.rest_poller import RestPoller, RestPollerConfig
from src.execution.venue_api import VenueApi
from src.execution.venue_client import RequestSigner, VenueClient
from src.infra.logging_cfg import make_event_logger
from src.market_data.stream_ingestor import StreamIngestor, StreamIngestorConfig
from src.market_data.transport import AiohttpStreamTransport, StreamSigner, StreamTransport
from src.monitoring.metrics_rich import RichMetrics
from src.risk.circuit_breaker import CircuitState
from src.state.event_ledger import EventLedger
from src.state.ledger_archiver import LedgerArchiver
from src.state.position_stats import PositionStats

log = logging.getLogger("dcabot")

_CIRCUIT_EVENTS = {
    CircuitState.OPEN: EventType.CIRCUIT_OPENED,
    CircuitState.HALF_OPEN: EventType.CIRCUIT_HALF_OPEN,
    CircuitState.CLOSED: EventType.CIRCUIT_CLOSED,
}
_CIRCUIT_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


@dataclass
class SharedServices:
    settings: Settings
    client: VenueClient
    governor: ApiGovernor
    bus: EventBus
    metrics: RichMetrics
    alerts: AlertManager
    archiver: LedgerArchiver
    tolerances: ToleranceTable
    _background: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Fire-and-forget from sync callbacks; no-op outside a running loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        await self.archiver.stop()
        await self.governor.stop()
        await self.client.close()
        await self.alerts.close()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)


@dataclass
class EngineContext:
    instrument: str
    settings: Settings
    shared: SharedServices
    event_ledger: EventLedger
    stats: PositionStats
    order_ledger: OrderLedger
    api: VenueApi
    poller: RestPoller
    ingestor: StreamIngestor
    reconciler: ReconciliationEngine
    inbound: asyncio.Queue
    # (price, monotonic time seen) of the freshest stream/poll price
    last_price: Optional[Tuple[float, float]] = None

    @property
    def bus(self) -> EventBus:
        return self.shared.bus

    @property
    def metrics(self) -> RichMetrics:
        return self.shared.metrics

    @property
    def alerts(self) -> AlertManager:
        return self.shared.alerts

    @property
    def governor(self) -> ApiGovernor:
        return self.shared.governor


def create_shared(
    settings: Settings,
    signer: Optional[RequestSigner] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    metrics: Optional[RichMetrics] = None,
    s3_client: Any = None,
) -> SharedServices:
    bus = EventBus()
    metrics = metrics or RichMetrics()
    alerts = AlertManager(AlertConfig(
        webhook_url=settings.alert_webhook_url,
        webhook_type=settings.alert_webhook_type,
        enabled=settings.alert_enabled,
    ))
    holder: dict = {}

    def _circuit_changed(old: CircuitState, new: CircuitState) -> None:
        metrics.circuit_open.set(_CIRCUIT_GAUGE[new])
        bus.emit_nowait(_CIRCUIT_EVENTS[new], source="governor", old=old.value, new=new.value)
        if new is CircuitState.OPEN or (old is not CircuitState.CLOSED and new is CircuitState.CLOSED):
            holder["shared"].spawn(alerts.alert_circuit(new is CircuitState.OPEN, f"{old.value} -> {new.value}"))

    governor = ApiGovernor(
        GovernorConfig(
            max_per_second=settings.max_requests_per_second,
            max_per_minute=settings.max_requests_per_minute,
            backoff_base_sec=settings.backoff_base_sec,
            backoff_max_sec=settings.backoff_max_sec,
            restore_after_sec=settings.limit_restore_sec,
            circuit_threshold=settings.circuit_threshold,
            circuit_cooldown_sec=settings.circuit_cooldown_sec,
            default_timeout_sec=settings.call_timeout_sec,
            default_max_attempts=settings.max_attempts,
            max_workers=settings.governor_workers,
            tick_sec=settings.governor_tick_sec,
        ),
        on_circuit_change=_circuit_changed,
    )
    client = VenueClient(settings.base_url, timeout=settings.http_timeout, signer=signer, client=http_client)
    archiver = LedgerArchiver(
        settings.ledger_dir,
        retention_days=settings.ledger_retention_days,
        interval_sec=settings.ledger_archive_interval_sec,
        s3_bucket=settings.archive_s3_bucket,
        s3_client=s3_client,
    )
    tolerances = ToleranceTable(
        load_per_instrument_overrides(settings.per_instrument_config),
        default=settings.default_tolerance,
    )
    shared = SharedServices(
        settings=settings,
        client=client,
        governor=governor,
        bus=bus,
        metrics=metrics,
        alerts=alerts,
        archiver=archiver,
        tolerances=tolerances,
    )
    holder["shared"] = shared
    return shared


def create_context(
    settings: Settings,
    instrument: str,
    shared: SharedServices,
    transport_factory: Optional[Callable[[], StreamTransport]] = None,
    stream_signer: Optional[StreamSigner] = None,
) -> EngineContext:
    """Build one instrument's components. Nothing is started or opened here."""
    inst = normalize_symbol(instrument)
    event_log = make_event_logger(log, instrument=inst)
    inbound: asyncio.Queue = asyncio.Queue()

    def _write_error(err: str) -> None:
        shared.metrics.ledger_write_errors.labels(instrument=inst).inc()
        shared.spawn(shared.alerts.alert_durability(inst, err))

    event_ledger = EventLedger(settings.ledger_dir, instrument=inst, on_write_error=_write_error)
    stats = PositionStats(inst)
    order_ledger = OrderLedger(inst, event_ledger, on_event=stats.apply_event, log_event=event_log)
    api = VenueApi(shared.client, shared.governor, timeout=settings.call_timeout_sec)
    poller = RestPoller(
        inst,
        api,
        pending_ids=order_ledger.pending_ids,
        config=RestPollerConfig(poll_interval_sec=settings.poll_interval_sec, log_event_callback=event_log),
    )

    if transport_factory is None:
        def transport_factory() -> StreamTransport:
            return AiohttpStreamTransport(settings.ws_url, signer=stream_signer)

    def _stream_state(kind: str, data: dict) -> None:
        shared.metrics.stream_connected.labels(instrument=inst).set(1 if kind == "connected" else 0)
        if kind == "disconnected":
            shared.metrics.stream_reconnects.labels(instrument=inst).inc()
        if kind in ("degraded", "recovered"):
            degraded = kind == "degraded"
            shared.metrics.stream_degraded.labels(instrument=inst).set(1 if degraded else 0)
            shared.spawn(shared.alerts.alert_stream(inst, degraded))
        event_type = {
            "connected": EventType.STREAM_CONNECTED,
            "disconnected": EventType.STREAM_DISCONNECTED,
            "degraded": EventType.STREAM_DEGRADED,
            "recovered": EventType.STREAM_RECOVERED,
        }[kind]
        shared.bus.emit_nowait(event_type, source="stream", **data)

    ingestor = StreamIngestor(
        inst,
        transport_factory,
        sink=inbound.put_nowait,
        poller=poller,
        config=StreamIngestorConfig(
            reconnect_delay_sec=settings.reconnect_delay_sec,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            heartbeat_interval_sec=settings.heartbeat_interval_sec,
            liveness_interval_sec=settings.liveness_interval_sec,
            stale_after_sec=settings.stale_after_sec,
            poll_interval_sec=settings.poll_interval_sec,
            log_event_callback=event_log,
        ),
        on_state_change=_stream_state,
    )

    ctx_holder: dict = {}

    def _unresolvable(exc: Any) -> None:
        shared.spawn(shared.alerts.alert_unresolvable(inst, exc.drift, **exc.details))

    reconciler = ReconciliationEngine(
        inst,
        api,
        stats,
        order_ledger,
        event_ledger,
        tolerances=shared.tolerances,
        price_provider=lambda: ctx_holder["ctx"].last_price,
        on_unresolvable=_unresolvable,
        config=ReconciliationConfig(interval_sec=settings.reconcile_interval_sec, log_event_callback=event_log),
    )
    ctx = EngineContext(
        instrument=inst,
        settings=settings,
        shared=shared,
        event_ledger=event_ledger,
        stats=stats,
        order_ledger=order_ledger,
        api=api,
        poller=poller,
        ingestor=ingestor,
        reconciler=reconciler,
        inbound=inbound,
    )
    ctx_holder["ctx"] = ctx
    log.info(dumps({"event": "context_created", "instrument": inst, "ledger_dir": settings.ledger_dir}))
    return ctx
