"""
CircuitBreaker: three-state breaker guarding the venue API.

    CLOSED --(N consecutive rate limits)--> OPEN
    OPEN --(cooldown elapsed, observed on next check)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN

While OPEN only critical calls are admitted. HALF_OPEN admits one trial call
at a time (critical calls are never held back).

Single-threaded asyncio usage (no internal locks).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from src.core.json_utils import dumps

log = logging.getLogger("dcabot")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    error_threshold: int = 3  # consecutive rate limits to open
    cooldown_sec: float = 60.0  # OPEN -> HALF_OPEN after this long


class CircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.error_streak: int = 0
        self._state = CircuitState.CLOSED
        self._opened_at: float = 0.0
        self._trip_count: int = 0
        self._trial_in_flight = False
        self._on_state_change = on_state_change
        self._log_event = log_event or self._default_log
        self._clock = clock

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def state(self) -> CircuitState:
        """Current state. An OPEN breaker whose cooldown has elapsed moves to HALF_OPEN here."""
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.config.cooldown_sec:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def opened_at(self) -> float:
        return self._opened_at

    @property
    def cooldown_remaining(self) -> float:
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.cooldown_sec - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        self._trial_in_flight = False
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
            self._trip_count += 1
        elif new_state is CircuitState.CLOSED:
            self.error_streak = 0
        self._log_event(
            "circuit_state_change",
            old=old.value,
            new=new_state.value,
            streak=self.error_streak,
            trip_count=self._trip_count,
        )
        if self._on_state_change:
            try:
                self._on_state_change(old, new_state)
            except Exception as exc:
                log.warning(dumps({"event": "circuit_callback_error", "err": str(exc)}))

    def allow(self, critical: bool) -> bool:
        """Admission check. In HALF_OPEN the first non-critical caller takes the trial slot."""
        state = self.state
        if state is CircuitState.CLOSED or critical:
            if state is CircuitState.HALF_OPEN:
                self._trial_in_flight = True
            return True
        if state is CircuitState.OPEN:
            return False
        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def record_limit(self, where: str, error: BaseException) -> bool:
        """Record a rate-limit response. Returns True if this opened the circuit."""
        self.error_streak += 1
        self._log_event("api_rate_limited", where=where, err=str(error), streak=self.error_streak)
        state = self.state
        if state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return True
        if state is CircuitState.CLOSED and self.error_streak >= self.config.error_threshold:
            self._transition(CircuitState.OPEN)
            return True
        return False

    def record_failure(self, where: str, error: BaseException) -> bool:
        """A non rate-limit failure only matters for the HALF_OPEN trial."""
        if self._state is CircuitState.HALF_OPEN:
            self._log_event("circuit_trial_failed", where=where, err=str(error))
            self._transition(CircuitState.OPEN)
            return True
        return False

    def record_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
        elif self.error_streak > 0 and self._state is CircuitState.CLOSED:
            self._log_event("api_limit_streak_reset", streak=self.error_streak)
            self.error_streak = 0

    def force_reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self.error_streak = 0

    def force_open(self) -> None:
        self._transition(CircuitState.OPEN)

    def get_state(self) -> dict:
        return {
            "state": self.state.value,
            "error_streak": self.error_streak,
            "trip_count": self._trip_count,
            "cooldown_remaining": self.cooldown_remaining,
        }
