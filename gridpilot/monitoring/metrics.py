"""
Prometheus metrics for the grid control loop.

Organized into: loop, execution, risk, alerting, per-bot state.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class GridMetrics:
    """Metrics for one orchestrator process."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Loop Metrics ===
        self.ticks = Counter(
            'orchestrator_ticks_total',
            'Control loop ticks executed',
            registry=reg
        )
        self.tick_duration_ms = Histogram(
            'orchestrator_tick_duration_ms',
            'Wall time of one control loop tick (milliseconds)',
            buckets=[10, 50, 100, 250, 500, 1000, 2000, 5000],
            registry=reg
        )
        self.bots_running = Gauge(
            'bots_running',
            'Engines in the registry',
            registry=reg
        )
        self.store_errors = Counter(
            'store_errors_total',
            'Store read/write failures',
            labelnames=['op'],
            registry=reg
        )

        # === Execution Metrics ===
        self.orders_placed = Counter(
            'orders_placed_total',
            'Orders accepted by the venue',
            labelnames=['bot', 'side', 'execution'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Orders rejected before or by the venue',
            labelnames=['bot'],
            registry=reg
        )
        self.price_fetch_errors = Counter(
            'price_fetch_errors_total',
            'Failed mark price fetches',
            labelnames=['bot'],
            registry=reg
        )
        self.guard_refusals = Counter(
            'guard_refusals_total',
            'Orders refused by the ghost-trading guard',
            labelnames=['bot', 'code'],
            registry=reg
        )

        # === Risk Metrics ===
        self.risk_stops = Counter(
            'risk_stops_total',
            'Bots stopped by a risk check or manual stop',
            labelnames=['reason'],
            registry=reg
        )
        self.flatten_failures = Counter(
            'flatten_failures_total',
            'Flatten attempts that raised',
            labelnames=['bot'],
            registry=reg
        )

        # === Alerting ===
        self.alerts_sent = Counter(
            'alerts_sent_total',
            'Alerts handed to the notifier',
            labelnames=['type'],
            registry=reg
        )
        self.alerts_suppressed = Counter(
            'alerts_suppressed_total',
            'Alerts dropped by the cooldown throttle or a full sink',
            labelnames=['type'],
            registry=reg
        )

        # === Per-bot State ===
        self.realized_pnl = Gauge(
            'bot_realized_pnl',
            'Realized PnL',
            labelnames=['bot'],
            registry=reg
        )
        self.open_positions = Gauge(
            'bot_open_positions',
            'Open positions tracked by the engine',
            labelnames=['bot'],
            registry=reg
        )
        self.last_price = Gauge(
            'bot_last_price',
            'Last mark price seen',
            labelnames=['bot'],
            registry=reg
        )

        self.registry = reg

    def forget_bot(self, bot_id: str) -> None:
        for gauge in (self.realized_pnl, self.open_positions, self.last_price):
            try:
                gauge.remove(bot_id)
            except KeyError:
                pass

    def serve(self, port: int) -> None:
        """Expose /metrics on `port`."""
        start_http_server(port, registry=self.registry)
