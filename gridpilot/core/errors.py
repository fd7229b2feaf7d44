"""
Exception hierarchy shared by all GridPilot components.

Engine-local failures stay local; exchange I/O failures bubble up to the
control loop, which logs and moves on. Trading-guard refusals are hard
failures by intent: they must never be retried implicitly.
"""

from __future__ import annotations

from typing import Any, Optional


class GridPilotError(Exception):
    """Base class for all GridPilot errors."""


class ConfigError(GridPilotError, ValueError):
    """Invalid settings or bot configuration."""


class ValidationError(GridPilotError, ValueError):
    """Request rejected at the boundary before reaching the exchange."""


class OrderSizeError(ValidationError):
    """Order size is non-positive or below the exchange minimum after rounding."""

    def __init__(self, message: str, requested: float, min_size: float, step: float) -> None:
        super().__init__(message)
        self.requested = requested
        self.min_size = min_size
        self.step = step


class ExchangeError(GridPilotError):
    """Transient or exchange-reported failure on an exchange call."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class ExchangeAuthError(ExchangeError):
    """Missing or rejected API credentials."""


class TradingGuardError(GridPilotError):
    """Order refused because the bot is not confirmed live by the control loop."""

    code = "trading_guard"

    def __init__(self, bot_id: str, detail: str = "") -> None:
        msg = f"{self.code}: bot={bot_id}"
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)
        self.bot_id = bot_id


class BotStaleError(TradingGuardError):
    code = "bot_stale"


class BotNotTradingError(TradingGuardError):
    code = "bot_not_trading"
