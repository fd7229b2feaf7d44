"""
Engine package.

Level ladder and the per-bot grid state machine.
"""

from gridpilot.engine.grid_engine import (
    EngineStats,
    GridEngine,
    TickDecision,
    TradeAction,
    decide_trade,
)
from gridpilot.engine.ladder import Crossing, LevelLadder

__all__ = [
    "Crossing",
    "EngineStats",
    "GridEngine",
    "LevelLadder",
    "TickDecision",
    "TradeAction",
    "decide_trade",
]
