"""
ApiGovernor: the single gateway for every remote venue call.

Architecture:
    Callers `await governor.submit(call, priority=...)` where `call` is a
    zero-argument coroutine factory. Requests wait in one of three FIFO queues
    (CRITICAL > NORMAL > BACKGROUND). A scheduler task admits the head of the
    highest non-empty queue when

      - a worker slot is free,
      - the sliding 1 s and 60 s admission windows have headroom,
      - no rate-limit backoff is in force,
      - the circuit breaker allows the priority.

    Admitted calls run as their own tasks; their outcome is delivered to the
    caller's future.

Rate limiting:
    A rate-limit failure (RateLimited, HTTP 429, or "rate limit"/"exceeded" in
    the message) starts a backoff of base * 3^(n-1) seconds (capped), shrinks
    both ceilings by 0.8 (floors 1/s and 10/min) and counts towards opening the
    circuit. After a quiet period the ceilings grow back by 1.25x per period
    until they reach the configured values.

Thread Safety:
    All counters are owned by the event loop; there are no worker threads.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from src.core.errors import (
    CircuitOpenError,
    GovernorShutdown,
    GovernorTimeout,
    RateLimited,
    ValidationError,
    VenueError,
    is_rate_limit_error,
)
from src.core.json_utils import dumps
from src.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState

log = logging.getLogger("dcabot")


class Priority(IntEnum):
    CRITICAL = 0  # order create / cancel
    NORMAL = 1  # status, balance, ticker
    BACKGROUND = 2  # history, stats


@dataclass
class GovernorConfig:
    """Configuration for ApiGovernor."""
    max_per_second: int = 10
    max_per_minute: int = 100
    min_per_second: int = 1
    min_per_minute: int = 10
    shrink_factor: float = 0.8
    restore_factor: float = 1.25
    restore_after_sec: float = 60.0

    backoff_base_sec: float = 1.0
    backoff_multiplier: float = 3.0
    backoff_max_sec: float = 120.0
    transient_retry_delay_sec: float = 0.5

    circuit_threshold: int = 3
    circuit_cooldown_sec: float = 60.0

    default_timeout_sec: float = 30.0
    default_max_attempts: int = 3
    max_workers: int = 4
    tick_sec: float = 0.1

    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class _Request:
    id: int
    call: Callable[[], Awaitable[Any]]
    priority: Priority
    label: str
    max_attempts: int
    retryable: bool
    retry_transient: bool
    future: asyncio.Future
    attempts: int = 0
    enqueued_at: float = 0.0
    admitted_at: Optional[float] = None


@dataclass
class GovernorStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    rate_limited: int = 0
    timed_out: int = 0
    rejected_open: int = 0
    shutdown_failed: int = 0
    by_priority: Dict[str, int] = field(default_factory=lambda: {p.name: 0 for p in Priority})


class ApiGovernor:
    """
    Priority-queued, rate-limited, circuit-breaking gateway.

    Usage:
        governor = ApiGovernor(GovernorConfig(max_per_second=5))
        governor.start()
        ticker = await governor.submit(lambda: client.ticker("SOL_USDC"), Priority.NORMAL)
        await governor.stop()
    """

    def __init__(
        self,
        config: Optional[GovernorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_circuit_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ) -> None:
        self.config = config or GovernorConfig()
        self._clock = clock
        self._log_event = self.config.log_event_callback or self._default_log
        self._on_circuit_change = on_circuit_change
        self.breaker = CircuitBreaker(
            CircuitBreakerConfig(
                error_threshold=self.config.circuit_threshold,
                cooldown_sec=self.config.circuit_cooldown_sec,
            ),
            on_state_change=self._circuit_changed,
            log_event=self._log_event,
            clock=clock,
        )

        self._queues: Dict[Priority, Deque[_Request]] = {p: deque() for p in Priority}
        self._inflight: Dict[int, asyncio.Task] = {}
        self._inflight_reqs: Dict[int, _Request] = {}
        self._ids = itertools.count(1)

        self._second_window: Deque[float] = deque()
        self._minute_window: Deque[float] = deque()
        self._rps: float = float(self.config.max_per_second)
        self._rpm: float = float(self.config.max_per_minute)
        self._consecutive_limits = 0
        self._blocked_until: float = 0.0
        self._last_limit_at: Optional[float] = None
        self._last_restore_at: float = 0.0

        self._wake = asyncio.Event()
        self._scheduler: Optional[asyncio.Task] = None
        self._running = False
        self._stopping = False
        self.stats = GovernorStats()

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, dumps({"event": event, **kwargs}))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._scheduler is None:
            self._running = True
            self._stopping = False
            self._scheduler = asyncio.create_task(self._schedule_loop(), name="api-governor")
            self._log_event("governor_started", rps=self._rps, rpm=self._rpm)

    async def stop(self, grace: float = 5.0) -> None:
        """Fail queued non-critical work, give critical work `grace` seconds, then cancel the rest."""
        if self._stopping:
            return
        self._stopping = True
        failed = self._fail_queued(
            lambda r: r.priority is not Priority.CRITICAL,
            lambda: GovernorShutdown("governor shutting down"),
        )
        self.stats.shutdown_failed += failed
        self._wake.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while (self._queues[Priority.CRITICAL] or self._inflight) and loop.time() < deadline:
            await asyncio.sleep(min(0.05, self.config.tick_sec))

        self.stats.shutdown_failed += self._fail_queued(lambda r: True, lambda: GovernorShutdown("governor shutting down"))
        for task in list(self._inflight.values()):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        for req in list(self._inflight_reqs.values()):
            self._set_exception(req, GovernorShutdown("governor shutting down"))
        self._inflight.clear()
        self._inflight_reqs.clear()

        self._running = False
        if self._scheduler:
            self._scheduler.cancel()
            await asyncio.gather(self._scheduler, return_exceptions=True)
            self._scheduler = None
        self._log_event("governor_stopped", shutdown_failed=self.stats.shutdown_failed)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        call: Callable[[], Awaitable[Any]],
        priority: Priority = Priority.NORMAL,
        *,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retryable: bool = True,
        retry_transient: bool = True,
        label: str = "call",
    ) -> Any:
        """Queue a call and wait for its result.

        `retry_transient=False` retries only rate-limited attempts, which the
        venue did not execute; use it for calls that must not run twice.

        Raises CircuitOpenError (non-critical while open), GovernorTimeout,
        GovernorShutdown, RateLimited once attempts are exhausted, or the
        call's own exception.
        """
        if self._stopping or not self._running:
            raise GovernorShutdown("governor is not running")
        priority = Priority(priority)
        if priority is not Priority.CRITICAL and self.breaker.state is CircuitState.OPEN:
            self.stats.rejected_open += 1
            raise CircuitOpenError(f"circuit open: {label} rejected")

        attempts = max_attempts if max_attempts is not None else self.config.default_max_attempts
        if not retryable:
            attempts = 1
        loop = asyncio.get_running_loop()
        req = _Request(
            id=next(self._ids),
            call=call,
            priority=priority,
            label=label,
            max_attempts=max(1, attempts),
            retryable=retryable,
            retry_transient=retry_transient,
            future=loop.create_future(),
            enqueued_at=self._clock(),
        )
        self._queues[priority].append(req)
        self.stats.submitted += 1
        self.stats.by_priority[priority.name] += 1
        self._wake.set()

        deadline = timeout if timeout is not None else self.config.default_timeout_sec
        try:
            return await asyncio.wait_for(asyncio.shield(req.future), timeout=deadline)
        except asyncio.TimeoutError:
            self._abandon(req)
            self.stats.timed_out += 1
            self._log_event("governor_call_timeout", level=logging.WARNING, label=label, timeout=deadline,
                            attempts=req.attempts, priority=priority.name)
            raise GovernorTimeout(f"{label} timed out after {deadline}s") from None
        except asyncio.CancelledError:
            self._abandon(req)
            raise

    def _abandon(self, req: _Request) -> None:
        """Drop a request: out of its queue, in-flight task cancelled, admission slot released."""
        try:
            self._queues[req.priority].remove(req)
        except ValueError:
            pass
        task = self._inflight.get(req.id)
        if task is not None:
            task.cancel()
            # an abandoned HALF_OPEN trial counts as a failed trial
            self.breaker.record_failure(req.label, GovernorTimeout(req.label))
        if req.admitted_at is not None:
            self._release_slot(req.admitted_at)
            req.admitted_at = None
        if not req.future.done():
            req.future.cancel()
        self._wake.set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule_loop(self) -> None:
        while self._running:
            try:
                self._dispatch_ready()
                self._wake.clear()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.config.tick_sec)
                except asyncio.TimeoutError:
                    pass
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self._log_event("governor_scheduler_error", level=logging.ERROR, err=str(exc))
                await asyncio.sleep(self.config.tick_sec)

    def _prune_windows(self, now: float) -> None:
        while self._second_window and now - self._second_window[0] >= 1.0:
            self._second_window.popleft()
        while self._minute_window and now - self._minute_window[0] >= 60.0:
            self._minute_window.popleft()

    def _has_headroom(self, now: float) -> bool:
        self._prune_windows(now)
        return (
            len(self._second_window) < max(1, int(self._rps))
            and len(self._minute_window) < max(1, int(self._rpm))
        )

    def _release_slot(self, admitted_at: float) -> None:
        for window in (self._second_window, self._minute_window):
            try:
                window.remove(admitted_at)
            except ValueError:
                pass

    def _next_request(self) -> Optional[_Request]:
        for priority in Priority:
            queue = self._queues[priority]
            while queue and queue[0].future.done():
                queue.popleft()
            if queue:
                return queue[0]
        return None

    def _dispatch_ready(self) -> None:
        now = self._clock()
        self._maybe_restore(now)
        while len(self._inflight) < self.config.max_workers:
            req = self._next_request()
            if req is None:
                return
            if now < self._blocked_until:
                return
            if not self._has_headroom(now):
                return
            critical = req.priority is Priority.CRITICAL
            if self.breaker.state is CircuitState.OPEN and not critical:
                self._queues[req.priority].popleft()
                self.stats.rejected_open += 1
                self._set_exception(req, CircuitOpenError(f"circuit open: {req.label} rejected"))
                continue
            if not self.breaker.allow(critical):
                return
            self._queues[req.priority].popleft()
            req.attempts += 1
            req.admitted_at = now
            self._second_window.append(now)
            self._minute_window.append(now)
            self._inflight_reqs[req.id] = req
            self._inflight[req.id] = asyncio.create_task(self._run(req), name=f"gov-{req.label}-{req.id}")

    async def _run(self, req: _Request) -> None:
        try:
            result = await req.call()
        except asyncio.CancelledError:
            if self._stopping:
                self._set_exception(req, GovernorShutdown("governor shutting down"))
            return
        except Exception as exc:
            self._on_failure(req, exc)
        else:
            self._consecutive_limits = 0
            self.breaker.record_success()
            self.stats.completed += 1
            if not req.future.done():
                req.future.set_result(result)
        finally:
            req.admitted_at = None
            self._inflight.pop(req.id, None)
            self._inflight_reqs.pop(req.id, None)
            self._wake.set()

    def _set_exception(self, req: _Request, exc: BaseException) -> None:
        if not req.future.done():
            req.future.set_exception(exc)
            # retrieve so an abandoned future does not log "exception never retrieved"
            req.future.exception()

    def _on_failure(self, req: _Request, exc: Exception) -> None:
        if req.future.done():
            return
        can_retry = req.retryable and req.attempts < req.max_attempts and not self._stopping

        if is_rate_limit_error(exc):
            self._handle_rate_limit(req, exc)
            if can_retry:
                if self.breaker.state is CircuitState.OPEN and req.priority is not Priority.CRITICAL:
                    self.stats.rejected_open += 1
                    self._set_exception(req, CircuitOpenError(f"circuit open: {req.label} rejected"))
                    return
                self.stats.retried += 1
                # rate-limited retries go to the front of their queue
                self._queues[req.priority].appendleft(req)
                return
            self.stats.failed += 1
            self._set_exception(req, exc if isinstance(exc, RateLimited) else RateLimited(str(exc)))
            return

        self.breaker.record_failure(req.label, exc)
        if can_retry and req.retry_transient and not isinstance(exc, (VenueError, ValidationError)):
            self.stats.retried += 1
            delay = self.config.transient_retry_delay_sec * (2 ** (req.attempts - 1))
            self._log_event("governor_retry", level=logging.WARNING, label=req.label,
                            attempt=req.attempts, delay=delay, err=str(exc))
            asyncio.get_running_loop().call_later(delay, self._requeue, req)
            return
        self.stats.failed += 1
        self._log_event("governor_call_failed", level=logging.WARNING, label=req.label,
                        attempts=req.attempts, err=str(exc), err_type=type(exc).__name__)
        self._set_exception(req, exc)

    def _requeue(self, req: _Request) -> None:
        if req.future.done():
            return
        if not self._running or (self._stopping and req.priority is not Priority.CRITICAL):
            self._set_exception(req, GovernorShutdown("governor shutting down"))
            return
        self._queues[req.priority].append(req)
        self._wake.set()

    # ------------------------------------------------------------------
    # Rate-limit adaptation
    # ------------------------------------------------------------------

    def _handle_rate_limit(self, req: _Request, exc: Exception) -> None:
        now = self._clock()
        self.stats.rate_limited += 1
        self._consecutive_limits += 1
        cfg = self.config
        delay = min(cfg.backoff_base_sec * (cfg.backoff_multiplier ** (self._consecutive_limits - 1)),
                    cfg.backoff_max_sec)
        self._blocked_until = max(self._blocked_until, now + delay)
        self._rps = max(float(cfg.min_per_second), self._rps * cfg.shrink_factor)
        self._rpm = max(float(cfg.min_per_minute), self._rpm * cfg.shrink_factor)
        self._last_limit_at = now
        self._last_restore_at = now
        self._log_event(
            "governor_backoff",
            level=logging.WARNING,
            label=req.label,
            consecutive=self._consecutive_limits,
            backoff_sec=round(delay, 3),
            rps=round(self._rps, 2),
            rpm=round(self._rpm, 2),
            err=str(exc),
        )
        self.breaker.record_limit(req.label, exc)

    def _maybe_restore(self, now: float) -> None:
        cfg = self.config
        if self._rps >= cfg.max_per_second and self._rpm >= cfg.max_per_minute:
            return
        if self._last_limit_at is None or now - self._last_restore_at < cfg.restore_after_sec:
            return
        self._rps = min(float(cfg.max_per_second), self._rps * cfg.restore_factor)
        self._rpm = min(float(cfg.max_per_minute), self._rpm * cfg.restore_factor)
        self._last_restore_at = now
        self._log_event("governor_limits_restored", rps=round(self._rps, 2), rpm=round(self._rpm, 2))

    def _circuit_changed(self, old: CircuitState, new: CircuitState) -> None:
        if new is CircuitState.OPEN:
            failed = self._fail_queued(
                lambda r: r.priority is not Priority.CRITICAL,
                lambda: CircuitOpenError("circuit opened; queued request dropped"),
            )
            self.stats.rejected_open += failed
            self._log_event("governor_circuit_opened", level=logging.ERROR, drained=failed)
        if self._on_circuit_change:
            self._on_circuit_change(old, new)

    def _fail_queued(self, predicate: Callable[[_Request], bool], make_exc: Callable[[], BaseException]) -> int:
        failed = 0
        for priority in Priority:
            queue = self._queues[priority]
            keep: Deque[_Request] = deque()
            while queue:
                req = queue.popleft()
                if not req.future.done() and predicate(req):
                    self._set_exception(req, make_exc())
                    failed += 1
                elif not req.future.done():
                    keep.append(req)
            self._queues[priority] = keep
        return failed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    @property
    def current_limits(self) -> tuple[float, float]:
        return self._rps, self._rpm

    def force_reset(self) -> None:
        """Operator override: close the circuit and restore configured limits."""
        self.breaker.force_reset()
        self._consecutive_limits = 0
        self._blocked_until = 0.0
        self._rps = float(self.config.max_per_second)
        self._rpm = float(self.config.max_per_minute)
        self._log_event("governor_force_reset")
        self._wake.set()

    def get_status(self) -> Dict[str, Any]:
        now = self._clock()
        self._prune_windows(now)
        return {
            "running": self._running,
            "circuit": self.breaker.get_state(),
            "rps_limit": round(self._rps, 2),
            "rpm_limit": round(self._rpm, 2),
            "last_second": len(self._second_window),
            "last_minute": len(self._minute_window),
            "consecutive_limits": self._consecutive_limits,
            "backoff_remaining": max(0.0, self._blocked_until - now),
            "queued": {p.name: len(self._queues[p]) for p in Priority},
            "inflight": len(self._inflight),
            "stats": dict(self.stats.__dict__),
        }
