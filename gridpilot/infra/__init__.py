"""
Infrastructure package.

Logging setup and the best-effort async sink.
"""

from gridpilot.infra.async_sink import BestEffortSink
from gridpilot.infra.logging_cfg import build_logger, log_event

__all__ = ["BestEffortSink", "build_logger", "log_event"]
