"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import gridpilot.
"""

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from gridpilot.core.models import BotConfig, GridMode  # noqa: E402


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def long_config():
    """lower=40000, upper=50000, 11 levels -> spacing 1000."""
    return BotConfig(
        symbol="BTCUSD",
        lower=40000.0,
        upper=50000.0,
        grid_count=11,
        mode=GridMode.LONG,
        quantity=1,
        max_positions=1,
    )
