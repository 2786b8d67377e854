"""
Configuration package: environment settings and per-instrument overrides.
"""

from src.config.config import Settings, env_bool
from src.config.per_instrument import ToleranceTable, load_per_instrument_overrides

__all__ = [
    "Settings",
    "env_bool",
    "ToleranceTable",
    "load_per_instrument_overrides",
]
