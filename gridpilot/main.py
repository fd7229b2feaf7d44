"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List

from gridpilot.config.config import Settings
from gridpilot.config.per_bot_config import load_per_bot_overrides
from gridpilot.config.validator import validate_and_log
from gridpilot.core.errors import ConfigError
from gridpilot.core.models import BotConfig
from gridpilot.execution.delta_client import DeltaExchange
from gridpilot.execution.paper_exchange import PaperExchange
from gridpilot.infra.async_sink import BestEffortSink
from gridpilot.infra.logging_cfg import build_logger, log_event
from gridpilot.monitoring.alert_throttle import AlertThrottle
from gridpilot.monitoring.alerting import build_notifier
from gridpilot.monitoring.metrics import GridMetrics
from gridpilot.orchestrator.bot_orchestrator import DEFAULT_ALERT_COOLDOWNS, Orchestrator, OrchestratorConfig
from gridpilot.state.store import FileBotStore

ALERT_STATE_FILE = "telegram-alerts.json"

log = logging.getLogger("gridpilot")


def orchestrator_config(cfg: Settings) -> OrchestratorConfig:
    return OrchestratorConfig(
        tick_interval_sec=cfg.tick_interval_sec,
        persist_interval_ms=cfg.persist_interval_ms,
        stale_after_ms=cfg.stale_after_ms,
        feed_stale_alert_sec=cfg.feed_stale_alert_sec,
        equity_interval_sec=cfg.equity_interval_sec,
        order_history_limit=cfg.order_history_limit,
        alert_cooldown_sec=cfg.alert_cooldown_sec,
        resolve_product_meta=cfg.resolve_product_meta,
    )


def build_exchanges(cfg: Settings) -> Dict[str, DeltaExchange]:
    return {
        "delta_india": DeltaExchange(
            cfg.delta_india_base_url,
            api_key=cfg.delta_india_api_key,
            api_secret=cfg.delta_india_api_secret,
            timeout=cfg.http_timeout,
        ),
        "delta_global": DeltaExchange(
            cfg.delta_global_base_url,
            api_key=cfg.delta_global_api_key,
            api_secret=cfg.delta_global_api_secret,
            timeout=cfg.http_timeout,
        ),
    }


async def _startup_bot_configs(store: FileBotStore) -> List[BotConfig]:
    """Running bot configs for the startup check. Unparseable ones are left to the loop."""
    try:
        records = await store.load_running_bots()
    except Exception as exc:
        log_event(log, "store_load_error", level=logging.WARNING, op="startup", err=str(exc))
        return []
    out: List[BotConfig] = []
    for rec in records:
        try:
            out.append(BotConfig.from_dict(rec.config))
        except ConfigError:
            continue
    return out


async def main() -> None:
    cfg = Settings.load()
    build_logger(level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    overrides = load_per_bot_overrides(cfg.per_bot_config)
    store = FileBotStore(
        cfg.data_dir,
        owner=cfg.owner,
        overrides=overrides,
        equity_max_points=cfg.equity_max_points,
    )

    if not validate_and_log(cfg, await _startup_bot_configs(store), log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    exchanges = build_exchanges(cfg)
    notifier = build_notifier(
        telegram_token=cfg.telegram_bot_token,
        telegram_chat_id=cfg.telegram_chat_id,
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        timeout=cfg.http_timeout,
    )
    throttle = AlertThrottle(
        default_cooldown_sec=cfg.alert_cooldown_sec,
        cooldowns=DEFAULT_ALERT_COOLDOWNS,
        path=Path(cfg.data_dir) / ALERT_STATE_FILE if cfg.persist_alert_throttle else None,
    )
    metrics = GridMetrics()
    if cfg.metrics_port > 0:
        metrics.serve(cfg.metrics_port)

    orchestrator = Orchestrator(
        store=store,
        exchanges=exchanges,
        paper=PaperExchange(),
        notifier=notifier,
        sink=BestEffortSink(maxsize=cfg.sink_queue_size, name="side-effects"),
        throttle=throttle,
        config=orchestrator_config(cfg),
        metrics=metrics,
    )
    log_event(log, "startup", data_dir=cfg.data_dir, owner=cfg.owner, overrides=len(overrides))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await orchestrator.run_forever(stop_event)
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
    finally:
        log.info("Closing connections...")
        await orchestrator.shutdown()
        for client in exchanges.values():
            await client.close()
        log.info("Shutdown complete")


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    cli()
