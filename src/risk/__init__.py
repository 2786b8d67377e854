"""
Risk package: circuit breaking for remote calls.
"""

from src.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
]
