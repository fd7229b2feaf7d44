"""
Monitoring package.

Alert delivery, alert cooldowns and Prometheus metrics.
"""

from gridpilot.monitoring.alert_throttle import AlertThrottle
from gridpilot.monitoring.alerting import (
    Alert,
    AlertSeverity,
    AlertType,
    LogNotifier,
    MultiNotifier,
    Notifier,
    TelegramNotifier,
    WebhookNotifier,
    build_notifier,
)
from gridpilot.monitoring.metrics import GridMetrics

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertThrottle",
    "AlertType",
    "GridMetrics",
    "LogNotifier",
    "MultiNotifier",
    "Notifier",
    "TelegramNotifier",
    "WebhookNotifier",
    "build_notifier",
]
