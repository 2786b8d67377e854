"""
Pytest configuration and fixtures.
Adds the repo root to sys.path so tests can import the `src` package.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from src.state.event_ledger import EventLedger  # noqa: E402

# 2024-05-01T12:00:00Z
T0 = 1714564800000


class FakeClock:
    """Manually advanced millisecond wall clock."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path, clock):
    led = EventLedger(str(tmp_path / "ledger"), instrument="SOL_USDC", fsync=False, clock=clock)
    led.open()
    return led
