"""
Utility helpers.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_iso(ts_ms: int) -> str:
    """UTC ISO-8601 with millisecond precision, e.g. 2024-05-01T12:00:00.000Z."""
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def iso_to_ms(value: str) -> int:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def utc_day(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def normalize_symbol(symbol: str) -> str:
    """Case and delimiter normalized instrument symbol: 'sol-usdc' -> 'SOL_USDC'."""
    return symbol.strip().upper().replace("-", "_").replace("/", "_")


def symbols_match(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return normalize_symbol(a) == normalize_symbol(b)


def base_asset(instrument: str) -> str:
    """'SOL_USDC' -> 'SOL'."""
    return normalize_symbol(instrument).split("_", 1)[0]


def to_float(value: Any) -> Optional[float]:
    """Parse a venue numeric field. Returns None for missing or non-finite input."""
    if value is None or value == "":
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(out):
        return None
    return out
