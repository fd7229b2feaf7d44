"""
Core package.

Domain types, the error hierarchy and small shared helpers.
"""

from gridpilot.core.errors import (
    BotNotTradingError,
    BotStaleError,
    ConfigError,
    ExchangeAuthError,
    ExchangeError,
    GridPilotError,
    OrderSizeError,
    TradingGuardError,
    ValidationError,
)
from gridpilot.core.models import (
    BotConfig,
    BotRecord,
    CrossDirection,
    EngineState,
    ExecutionMode,
    GridMode,
    Level,
    OrderRecord,
    OrderStatus,
    Position,
    RuntimeSnapshot,
    Side,
    TradeStats,
)
from gridpilot.core.utils import now_ms, norm_price, to_float

__all__ = [
    "BotConfig",
    "BotNotTradingError",
    "BotRecord",
    "BotStaleError",
    "ConfigError",
    "CrossDirection",
    "EngineState",
    "ExchangeAuthError",
    "ExchangeError",
    "ExecutionMode",
    "GridMode",
    "GridPilotError",
    "Level",
    "OrderRecord",
    "OrderSizeError",
    "OrderStatus",
    "Position",
    "RuntimeSnapshot",
    "Side",
    "TradeStats",
    "TradingGuardError",
    "ValidationError",
    "now_ms",
    "norm_price",
    "to_float",
]
