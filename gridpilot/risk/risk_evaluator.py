"""
Risk evaluation for running grid bots.

Stateless checks run by the control loop once per bot per tick, in fixed
order; the first stop wins:

1. out_of_range              price outside [lower, upper]
2. max_consecutive_loss_<n>  loss streak reached the configured limit
3. circuit_breaker_<pct>%    drawdown of (realized + unrealized) / investment

A circuit breaker at 80-100% of its threshold yields a warning, not a stop.
A limit of 0 disables its check.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gridpilot.core.models import BotConfig

WARN_FRACTION = 0.8


class RiskAction(str, Enum):
    CONTINUE = "continue"
    WARN = "warn"
    STOP = "stop"


@dataclass(frozen=True)
class RiskVerdict:
    action: RiskAction
    reason: Optional[str] = None
    drawdown_pct: Optional[float] = None

    @property
    def should_stop(self) -> bool:
        return self.action is RiskAction.STOP


CONTINUE = RiskVerdict(RiskAction.CONTINUE)


def check_out_of_range(price: float, lower: float, upper: float) -> Optional[RiskVerdict]:
    if price < lower or price > upper:
        return RiskVerdict(RiskAction.STOP, "out_of_range")
    return None


def check_loss_streak(consecutive_losses: int, max_consecutive_loss: int) -> Optional[RiskVerdict]:
    if max_consecutive_loss > 0 and consecutive_losses >= max_consecutive_loss:
        return RiskVerdict(RiskAction.STOP, f"max_consecutive_loss_{max_consecutive_loss}")
    return None


def drawdown_pct(realized_pnl: float, unrealized_pnl: float, investment: float) -> Optional[float]:
    """PnL as a percent of invested capital; None without a positive baseline."""
    if investment <= 0:
        return None
    return (realized_pnl + unrealized_pnl) / investment * 100.0


def check_circuit_breaker(
    realized_pnl: float,
    unrealized_pnl: float,
    investment: float,
    circuit_breaker_pct: float,
) -> Optional[RiskVerdict]:
    if circuit_breaker_pct <= 0:
        return None
    dd = drawdown_pct(realized_pnl, unrealized_pnl, investment)
    if dd is None:
        return None
    threshold = -abs(circuit_breaker_pct)
    if dd <= threshold:
        return RiskVerdict(RiskAction.STOP, f"circuit_breaker_{circuit_breaker_pct:g}%", drawdown_pct=dd)
    if dd <= threshold * WARN_FRACTION:
        return RiskVerdict(RiskAction.WARN, "circuit_breaker_warning", drawdown_pct=dd)
    return None


def evaluate(
    config: BotConfig,
    price: float,
    consecutive_losses: int,
    realized_pnl: float,
    unrealized_pnl: float,
) -> RiskVerdict:
    """Run every check in precedence order; the first stop short-circuits."""
    verdict = check_out_of_range(price, config.lower, config.upper)
    if verdict is not None:
        return verdict

    verdict = check_loss_streak(consecutive_losses, config.max_consecutive_loss)
    if verdict is not None:
        return verdict

    verdict = check_circuit_breaker(realized_pnl, unrealized_pnl, config.investment, config.circuit_breaker_pct)
    if verdict is not None:
        return verdict
    return CONTINUE
