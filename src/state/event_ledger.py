"""
Append-only event ledger.

Newline-delimited JSON files partitioned by UTC calendar day
(`events_YYYY-MM-DD.jsonl`) under one directory shared by every instrument.
Appends run in the default executor under a lock so the event loop never
blocks on disk; replay is a plain lazy generator that re-reads the files from
the beginning every time it is called.

Archived days (`events_YYYY-MM-DD.jsonl.gz`, see LedgerArchiver) are read
transparently by replay.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import os
import re
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from src.core.errors import DurabilityError, ValidationError
from src.core.json_utils import dumps as json_dumps, loads as json_loads
from src.core.utils import normalize_symbol, now_ms, utc_day
from src.state.domain_events import DomainEvent, from_record

log = logging.getLogger("dcabot")

FILE_PREFIX = "events_"
FILE_RE = re.compile(r"^events_(\d{4}-\d{2}-\d{2})\.jsonl(\.gz)?$")

# One writer lock per ledger directory, shared by every EventLedger in the process.
_dir_locks: Dict[str, threading.Lock] = {}
_dir_locks_guard = threading.Lock()


def _lock_for(directory: Path) -> threading.Lock:
    key = str(directory.resolve())
    with _dir_locks_guard:
        lock = _dir_locks.get(key)
        if lock is None:
            lock = _dir_locks[key] = threading.Lock()
        return lock


def day_file_name(day: str) -> str:
    return f"{FILE_PREFIX}{day}.jsonl"


def list_day_files(directory: Path) -> List[Tuple[str, Path]]:
    """(day, path) pairs in chronological order; an archived day sorts before its plain file."""
    if not directory.exists():
        return []
    found = []
    for p in directory.iterdir():
        m = FILE_RE.match(p.name)
        if m:
            found.append((m.group(1), 0 if m.group(2) else 1, p))
    found.sort(key=lambda t: (t[0], t[1]))
    return [(day, p) for day, _, p in found]


class EventLedger:
    def __init__(
        self,
        ledger_dir: str,
        instrument: Optional[str] = None,
        fsync: bool = True,
        on_write_error: Optional[Callable[[str], None]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Durable append-only log of domain events.

        - `instrument`: default replay filter (None replays everything).
        - `fsync`: fsync after every append; an append is committed only once it returns.
        - `on_write_error`: callback when an append fails (for metrics/alerts).
        - `clock`: wall clock in ms used to choose the day file.
        """
        self.directory = Path(ledger_dir)
        self.instrument = normalize_symbol(instrument) if instrument else None
        self._fsync = fsync
        self._on_write_error = on_write_error
        self._clock = clock
        self._lock = asyncio.Lock()
        self._file_lock = _lock_for(self.directory)
        self._write_errors = 0
        self._appended = 0
        self._skipped_records = 0

    @property
    def write_errors(self) -> int:
        return self._write_errors

    @property
    def appended(self) -> int:
        return self._appended

    @property
    def skipped_records(self) -> int:
        """Malformed records skipped across all replays of this instance."""
        return self._skipped_records

    def open(self) -> None:
        """Create the directory and prove it is writable. Raises DurabilityError."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            probe = self.directory / f".probe-{os.getpid()}-{id(self)}"
            with probe.open("w", encoding="utf-8") as fh:
                fh.write("ok")
            probe.unlink()
        except OSError as exc:
            raise DurabilityError(f"event ledger directory {self.directory} is not writable: {exc}") from exc
        log.info(json_dumps({
            "event": "ledger_opened",
            "dir": str(self.directory),
            "instrument": self.instrument,
            "files": len(list_day_files(self.directory)),
        }))

    def current_path(self) -> Path:
        return self.directory / day_file_name(utc_day(self._clock()))

    async def append(self, event: DomainEvent) -> None:
        """Append one event. Raises DurabilityError; nothing is committed on failure."""
        line = json_dumps(event.to_record()) + "\n"
        path = self.current_path()
        file_lock = self._file_lock

        def _append() -> Optional[str]:
            try:
                with file_lock:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    with path.open("a", encoding="utf-8") as fh:
                        fh.write(line)
                        fh.flush()
                        if self._fsync:
                            os.fsync(fh.fileno())
                return None
            except OSError as e:
                return str(e)

        async with self._lock:
            loop = asyncio.get_running_loop()
            err = await loop.run_in_executor(None, _append)

        if err:
            self._write_errors += 1
            log.error(json_dumps({
                "event": "ledger_append_failed",
                "path": str(path),
                "action": event.action.value,
                "event_id": event.event_id,
                "err": err,
            }))
            if self._on_write_error:
                try:
                    self._on_write_error(err)
                except Exception as cb_exc:
                    log.warning(json_dumps({"event": "ledger_write_error_callback_failed", "err": str(cb_exc)}))
            raise DurabilityError(f"append to {path} failed: {err}")
        self._appended += 1

    def replay(self, instrument: Optional[str] = None, all_instruments: bool = False) -> Iterator[DomainEvent]:
        """Yield every stored event in append order.

        Filters by `instrument` (default: the ledger's own) unless
        `all_instruments` is set. Malformed lines are logged and skipped.
        Each call starts again from the first file.
        """
        wanted = None
        if not all_instruments:
            wanted = normalize_symbol(instrument) if instrument else self.instrument

        for _day, path in list_day_files(self.directory):
            opener = gzip.open if path.suffix == ".gz" else open
            try:
                fh = opener(path, "rt", encoding="utf-8")
            except OSError as exc:
                log.error(json_dumps({"event": "ledger_file_unreadable", "path": str(path), "err": str(exc)}))
                continue
            with fh:
                for lineno, raw in enumerate(fh, start=1):
                    raw = raw.strip()
                    if not raw:
                        continue
                    try:
                        event = from_record(json_loads(raw))
                    except (ValueError, ValidationError) as exc:
                        self._skipped_records += 1
                        log.warning(json_dumps({
                            "event": "ledger_record_skipped",
                            "instrument": wanted,
                            "path": path.name,
                            "line": lineno,
                            "err": str(exc),
                        }))
                        continue
                    if wanted is not None and event.instrument != wanted:
                        continue
                    yield event
