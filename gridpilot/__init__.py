"""
GridPilot - grid trading control loop for leveraged derivatives.

Subpackages:
    engine        Level ladder and per-bot grid state machine
    execution     Exchange port, signed REST adapter, paper fills, order gateway
    risk          Stateless halt decisions (range, loss streak, drawdown)
    orchestrator  Control loop driving many engines
    monitoring    Alerts, alert throttling, metrics
    state         Bot store and equity history
    config        Environment-driven settings and validation
    infra         Logging and best-effort async sink
"""

__version__ = "0.4.0"
