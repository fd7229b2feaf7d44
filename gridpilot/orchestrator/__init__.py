"""
Orchestrator package.

The control loop over all running bots and the equity aggregation it samples.
"""

from gridpilot.orchestrator.bot_orchestrator import (
    DEFAULT_ALERT_COOLDOWNS,
    EngineEntry,
    Orchestrator,
    OrchestratorConfig,
    TickSummary,
)
from gridpilot.orchestrator.equity import EquitySample, compute_live_equity, compute_paper_equity

__all__ = [
    "DEFAULT_ALERT_COOLDOWNS",
    "EngineEntry",
    "EquitySample",
    "Orchestrator",
    "OrchestratorConfig",
    "TickSummary",
    "compute_live_equity",
    "compute_paper_equity",
]
