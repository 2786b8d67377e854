"""
Error taxonomy for the engine.

Transient and rate-limit errors are handled inside the ApiGovernor and only
surface once retries are exhausted. Validation errors skip the offending
record. UnresolvableReconciliation and DurabilityError always reach the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for engine errors."""


class TransientNetworkError(EngineError):
    """Connection reset, timeout at transport level, 5xx."""


class RateLimited(EngineError):
    """Venue refused the call because of rate limiting (HTTP 429 or equivalent)."""

    def __init__(self, message: str = "rate limit exceeded", status: Optional[int] = 429) -> None:
        super().__init__(message)
        self.status = status


class VenueError(EngineError):
    """Non-retryable venue rejection (4xx other than 429)."""

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class CircuitOpenError(EngineError):
    """Non-critical call rejected while the governor circuit is open."""


class GovernorTimeout(EngineError):
    """The call did not complete within its deadline."""


class GovernorShutdown(EngineError):
    """The governor is stopping; queued non-critical work is failed with this."""


class ValidationError(EngineError):
    """Malformed order, price or ledger data."""


class UnresolvableReconciliation(EngineError):
    """Positive drift with no usable reference price."""

    def __init__(self, instrument: str, drift: float, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"no reference price to reconcile {instrument} drift {drift}")
        self.instrument = instrument
        self.drift = drift
        self.details = details or {}


class DurabilityError(EngineError):
    """The event ledger could not be written or opened."""


def is_rate_limit_error(exc: BaseException) -> bool:
    """Rate-limit detection: explicit type, HTTP 429, or a message naming the limit."""
    if isinstance(exc, RateLimited):
        return True
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    if status == 429:
        return True
    msg = str(exc).lower()
    return "rate limit" in msg or "exceeded" in msg or "429" in msg
