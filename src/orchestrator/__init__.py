"""
Orchestrator package: the per-instrument engine that owns the sequential path.
"""

from src.orchestrator.engine import Engine, PlaceResult

__all__ = [
    "Engine",
    "PlaceResult",
]
