"""
Structured logging setup for the engine.

- Rich console handler for operators
- JSON file handler behind a background queue so the event loop never blocks on disk
- Throttling for repetitive warnings (stale stream, governor backoff, skipped records)

Every component logs compact JSON messages of the form {"event": ..., ...}.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from rich.logging import RichHandler

from src.core.json_utils import dumps, loads

LOGGER_NAME = "dcabot"

# Level semantics
CRITICAL_SAFETY = logging.CRITICAL  # ledger unwritable, unresolvable drift
ERROR = logging.ERROR
WARNING = logging.WARNING           # reconnects, retries, corrections
INFO = logging.INFO                 # fills, reconciliation passes
DEBUG = logging.DEBUG               # raw stream traffic


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler that queues records for a background writer thread.
    Records are dropped (and counted) when the queue is full.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="log-writer")
        self._thread.start()
        atexit.register(self.close)

    @property
    def dropped(self) -> int:
        return self._dropped

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats for the same instrument for cooldown_sec.
    """

    DEFAULT_EVENTS = frozenset({
        "stream_stale_detected",
        "stream_reconnect_scheduled",
        "governor_backoff",
        "ledger_record_skipped",
        "poll_error",
    })

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or self.DEFAULT_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = loads(record.getMessage())
        except ValueError:
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.monotonic()
        key = f"{event}:{data.get('instrument', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = "dcabot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the engine logger. Idempotent: a second call only adjusts levels.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON log file (None disables file logging)
        async_file: Write the file through AsyncQueueHandler
        throttle_warnings: Apply ThrottledFilter to the console handler
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    stream_handler = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        stream_handler.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(stream_handler)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    **data,
) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "order_filled", level=INFO, instrument="SOL_USDC", qty=0.1)
    """
    logger.log(level, dumps({"event": event, **data}))


def make_event_logger(logger: logging.Logger, **context):
    """Bind context fields (e.g. instrument) into a `log_event(event, **kw)` callable.

    A `level` keyword selects the log level; it defaults to INFO.
    """

    def _log(event: str, level: int = logging.INFO, **data) -> None:
        log_event(logger, event, level=level, **{**context, **data})

    return _log
