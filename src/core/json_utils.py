"""
Fast JSON utilities for ledger records and structured log lines.

Usage:
    from src.core.json_utils import dumps, loads

    log.info(dumps({"event": "fill", "px": 100.0}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_bytes(obj: Any) -> bytes:
    """Fast JSON encode to bytes (skips the utf-8 decode)."""
    return orjson.dumps(obj)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)


# Raised by loads() on malformed input; orjson.JSONDecodeError subclasses ValueError.
JSONDecodeError = orjson.JSONDecodeError
