"""
Risk package.

Stateless stop/warn checks evaluated by the control loop.
"""

from gridpilot.risk.risk_evaluator import (
    RiskAction,
    RiskVerdict,
    check_circuit_breaker,
    check_loss_streak,
    check_out_of_range,
    drawdown_pct,
    evaluate,
)

__all__ = [
    "RiskAction",
    "RiskVerdict",
    "check_circuit_breaker",
    "check_loss_streak",
    "check_out_of_range",
    "drawdown_pct",
    "evaluate",
]
