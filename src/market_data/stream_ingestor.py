"""
StreamIngestor: keeps the push feed alive and turns it into canonical events.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> ...

A dropped or failed connection is retried after a fixed delay. Once the
consecutive attempt count passes `max_reconnect_attempts` the ingestor is
degraded: the RestPoller feeds the same sink until the stream delivers data
again. Polling never runs while the stream is healthy.

Timers (all asyncio tasks owned by the ingestor):
    heartbeat  - ping every heartbeat_interval_sec while CONNECTED
    liveness   - every liveness_interval_sec; CONNECTED but silent for more
                 than stale_after_sec forces a reconnect
    poll       - only while degraded

Only events whose symbol equals the subscribed instrument (after
normalization) reach the sink. Balance updates carry no symbol and always
pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from src.core.errors import ValidationError
from src.core.json_utils import dumps
from src.core.utils import normalize_symbol, symbols_match
from src.execution.rest_poller import RestPoller
from src.market_data.extractors import (
    DEFAULT_EXTRACTORS,
    BalanceUpdate,
    Extractor,
    StreamEvent,
    decode,
    is_control_message,
    normalize_message,
)
from src.market_data.transport import StreamTransport

log = logging.getLogger("dcabot")


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class StreamIngestorConfig:
    reconnect_delay_sec: float = 5.0
    max_reconnect_attempts: int = 5
    heartbeat_interval_sec: float = 30.0
    liveness_interval_sec: float = 15.0
    stale_after_sec: float = 30.0
    poll_interval_sec: float = 5.0
    log_event_callback: Optional[Callable[..., None]] = None


class StreamIngestor:
    def __init__(
        self,
        instrument: str,
        transport_factory: Callable[[], StreamTransport],
        sink: Callable[[StreamEvent], Any],
        poller: Optional[RestPoller] = None,
        config: Optional[StreamIngestorConfig] = None,
        extractors: Sequence[Extractor] = DEFAULT_EXTRACTORS,
        on_state_change: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.instrument = normalize_symbol(instrument)
        self._transport_factory = transport_factory
        self._sink = sink
        self._poller = poller
        self.config = config or StreamIngestorConfig()
        self._extractors = list(extractors)
        self._on_state_change = on_state_change
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log

        self.state = StreamState.DISCONNECTED
        self.degraded = False
        self.reconnect_attempts = 0
        self.last_message_at: float = 0.0
        self._transport: Optional[StreamTransport] = None
        self._handle: List[str] = []
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._poll_task: Optional[asyncio.Task] = None
        self._stats = {
            "messages": 0,
            "delivered": 0,
            "control": 0,
            "unrecognized": 0,
            "invalid": 0,
            "foreign_symbol": 0,
            "reconnects": 0,
            "stale_reconnects": 0,
        }

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, "instrument": self.instrument, **kwargs}))

    def _notify(self, kind: str, **data: Any) -> None:
        if self._on_state_change is not None:
            self._on_state_change(kind, {"instrument": self.instrument, **data})

    def _set_state(self, new: StreamState) -> None:
        if new is self.state:
            return
        old, self.state = self.state, new
        self._log_event("stream_state", old=old.value, new=new.value, attempts=self.reconnect_attempts)
        if new is StreamState.CONNECTED:
            self._notify("connected")
        elif old is StreamState.CONNECTED:
            self._notify("disconnected")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop(), name="stream-run"),
            asyncio.create_task(self._heartbeat_loop(), name="stream-heartbeat"),
            asyncio.create_task(self._liveness_loop(), name="stream-liveness"),
        ]

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
            self._poll_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        await self._close_transport()
        self._set_state(StreamState.DISCONNECTED)

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except (OSError, RuntimeError) as exc:
            self._log_event("stream_close_error", level=logging.WARNING, err=str(exc))

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def connect_once(self) -> bool:
        """One connect + subscribe attempt. True when CONNECTED."""
        self._set_state(StreamState.CONNECTING)
        transport = self._transport_factory()
        self._transport = transport
        try:
            await transport.connect()
            self._handle = await transport.subscribe(self.instrument)
        except (OSError, asyncio.TimeoutError, aiohttp.ClientError, RuntimeError) as exc:
            self._log_event("stream_connect_failed", level=logging.WARNING, err=str(exc), err_type=type(exc).__name__)
            await self._close_transport()
            self._set_state(StreamState.DISCONNECTED)
            return False
        # staleness is measured from the moment the connection is up
        self.last_message_at = self._clock()
        self._set_state(StreamState.CONNECTED)
        return True

    async def _run_loop(self) -> None:
        while self._running:
            if await self.connect_once():
                await self._receive_loop()
                await self._close_transport()
                self._set_state(StreamState.DISCONNECTED)
            if not self._running:
                break
            self.reconnect_attempts += 1
            self._stats["reconnects"] += 1
            if self.reconnect_attempts > self.config.max_reconnect_attempts and not self.degraded:
                self._enter_degraded()
            self._log_event(
                "stream_reconnect_scheduled",
                level=logging.WARNING,
                attempt=self.reconnect_attempts,
                delay_sec=self.config.reconnect_delay_sec,
                degraded=self.degraded,
            )
            await asyncio.sleep(self.config.reconnect_delay_sec)

    async def _receive_loop(self) -> None:
        transport = self._transport
        while self._running and transport is not None and transport is self._transport:
            try:
                raw = await transport.receive()
            except (OSError, aiohttp.ClientError, RuntimeError) as exc:
                self._log_event("stream_receive_error", level=logging.WARNING, err=str(exc))
                return
            if raw is None:
                return
            self.last_message_at = self._clock()
            await self.handle_raw(raw)

    async def force_reconnect(self, reason: str) -> None:
        """Drop the current connection; the run loop reconnects after the fixed delay."""
        self._log_event("stream_force_reconnect", level=logging.WARNING, reason=reason)
        await self._close_transport()
        self._set_state(StreamState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: Any) -> Optional[StreamEvent]:
        """Decode, normalize, filter by symbol and deliver one frame."""
        self._stats["messages"] += 1
        msg = decode(raw)
        if msg is None or is_control_message(msg):
            self._stats["control"] += 1
            return None
        try:
            event = normalize_message(msg, self._extractors)
        except ValidationError as exc:
            self._stats["invalid"] += 1
            self._log_event("stream_message_invalid", level=logging.WARNING, err=str(exc))
            return None
        if event is None:
            self._stats["unrecognized"] += 1
            return None
        if not isinstance(event, BalanceUpdate) and not symbols_match(event.symbol, self.instrument):
            self._stats["foreign_symbol"] += 1
            return None

        # first real data after trouble proves the stream healthy
        self.reconnect_attempts = 0
        if self.degraded:
            self._exit_degraded()

        self._stats["delivered"] += 1
        result = self._sink(event)
        if asyncio.iscoroutine(result):
            await result
        return event

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def check_liveness(self) -> bool:
        """Force a reconnect when CONNECTED but silent too long. True if one was forced."""
        if self.state is not StreamState.CONNECTED:
            return False
        gap = self._clock() - self.last_message_at
        if gap <= self.config.stale_after_sec:
            return False
        self._stats["stale_reconnects"] += 1
        self._log_event("stream_stale_detected", level=logging.WARNING, gap_sec=round(gap, 1))
        await self.force_reconnect("stale")
        return True

    async def _liveness_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.liveness_interval_sec)
            await self.check_liveness()

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.heartbeat_interval_sec)
            transport = self._transport
            if self.state is not StreamState.CONNECTED or transport is None:
                continue
            try:
                await transport.ping()
            except (OSError, aiohttp.ClientError, RuntimeError) as exc:
                self._log_event("stream_ping_failed", level=logging.WARNING, err=str(exc))

    # ------------------------------------------------------------------
    # Degraded mode
    # ------------------------------------------------------------------

    def _enter_degraded(self) -> None:
        self.degraded = True
        self._log_event("stream_degraded", level=logging.ERROR, attempts=self.reconnect_attempts,
                        polling=self._poller is not None)
        self._notify("degraded", attempts=self.reconnect_attempts)
        if self._poller is not None and self._poll_task is None and self._running:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="stream-poll")

    def _exit_degraded(self) -> None:
        self.degraded = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._log_event("stream_recovered")
        self._notify("recovered")

    async def _poll_loop(self) -> None:
        poller = self._poller
        if poller is None:
            return
        while self._running and self.degraded:
            await poller.poll_once(self._sink)
            await asyncio.sleep(self.config.poll_interval_sec)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "state": self.state.value,
            "degraded": self.degraded,
            "reconnect_attempts": self.reconnect_attempts,
            "silent_sec": round(self._clock() - self.last_message_at, 1) if self.last_message_at else None,
            **self._stats,
        }
