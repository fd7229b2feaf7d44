"""
Orchestrator: the control loop driving every running grid bot.

Owns the registry bot id -> EngineEntry and, once per tick:

    1. reloads the authoritative bot list from the store
    2. evicts engines whose bot vanished or stopped running
    3. disarms every engine (ghost-trading guard)
    4. for each running bot, sequentially:
         ensure engine (create / hydrate / reconfigure)
         re-arm, fetch mark price, feed the engine
         evaluate risk -> flatten and mark stopped, or persist a snapshot
    5. samples aggregate equity on its own, coarser interval

Bots are processed one at a time, so no two order placements race and
no bot is ticked twice concurrently. Alerts and equity appends go through
the best-effort sink and never block or fail a tick.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from gridpilot.core.errors import ConfigError, TradingGuardError
from gridpilot.core.models import BotConfig, BotRecord, OrderRecord, OrderStatus, RuntimeSnapshot
from gridpilot.core.utils import now_ms
from gridpilot.engine.grid_engine import GridEngine
from gridpilot.execution.exchange_port import ExchangePort
from gridpilot.execution.order_gateway import BotOrderGateway, OrderLog, TradingGuard
from gridpilot.execution.paper_exchange import PaperExchange
from gridpilot.infra.async_sink import BestEffortSink
from gridpilot.infra.logging_cfg import log_event
from gridpilot.monitoring.alert_throttle import AlertThrottle
from gridpilot.monitoring.alerting import Alert, AlertSeverity, AlertType, LogNotifier, Notifier
from gridpilot.monitoring.metrics import GridMetrics
from gridpilot.orchestrator.equity import compute_live_equity, compute_paper_equity
from gridpilot.risk.risk_evaluator import RiskAction, evaluate
from gridpilot.state.store import StorePort

log = logging.getLogger("gridpilot")

SYSTEM_BOT_ID = "_system"

# order alerts are never throttled; everything else uses the default cooldown
DEFAULT_ALERT_COOLDOWNS: Dict[str, float] = {
    AlertType.ORDER_PLACED.value: 0.0,
    AlertType.ORDER_REJECTED.value: 0.0,
}


@dataclass
class OrchestratorConfig:
    """Configuration for the control loop."""
    tick_interval_sec: float = 1.2
    persist_interval_ms: int = 900
    stale_after_ms: int = 5000
    feed_stale_alert_sec: float = 15.0
    equity_interval_sec: float = 60.0
    order_history_limit: int = 120
    alert_cooldown_sec: float = 300.0
    resolve_product_meta: bool = True


@dataclass
class EngineEntry:
    """Everything the loop keeps per running bot."""
    bot_id: str
    name: str
    engine: GridEngine
    gateway: BotOrderGateway
    guard: TradingGuard
    config_hash: str
    created_ms: int
    last_persist_ms: int = 0
    last_price_ok_ms: int = 0
    started_price: Optional[float] = None

    @property
    def config(self) -> BotConfig:
        return self.engine.config


@dataclass
class TickSummary:
    bots_seen: int = 0
    processed: int = 0
    orders_placed: int = 0
    stopped: List[str] = field(default_factory=list)
    errors: int = 0
    store_error: bool = False
    duration_ms: float = 0.0


class Orchestrator:
    """
    Single-writer owner of the engine registry and alert throttle state.

    Construct once per process and drive with `run_forever()`, or call
    `tick()` directly (tests, one-shot tooling).
    """

    def __init__(
        self,
        store: StorePort,
        exchanges: Mapping[str, ExchangePort],
        paper: Optional[ExchangePort] = None,
        notifier: Optional[Notifier] = None,
        sink: Optional[BestEffortSink] = None,
        throttle: Optional[AlertThrottle] = None,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional[GridMetrics] = None,
        clock=now_ms,
    ) -> None:
        self.store = store
        self.exchanges: Dict[str, ExchangePort] = dict(exchanges)
        self.paper = paper or PaperExchange()
        self.notifier = notifier or LogNotifier()
        self.sink = sink or BestEffortSink(name="orchestrator")
        self.config = config or OrchestratorConfig()
        self.throttle = throttle or AlertThrottle(
            default_cooldown_sec=self.config.alert_cooldown_sec,
            cooldowns=DEFAULT_ALERT_COOLDOWNS,
        )
        self.metrics = metrics or GridMetrics()
        self._clock = clock

        self.entries: Dict[str, EngineEntry] = {}
        self._last_equity_ms = 0
        self._tick_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _alert(self, alert: Alert) -> bool:
        """Throttle, then hand to the sink. Never blocks, never raises."""
        bot_id = alert.bot_id or SYSTEM_BOT_ID
        kind = alert.alert_type.value
        now = self._clock()
        if not self.throttle.can_send(bot_id, kind, now):
            self.metrics.alerts_suppressed.labels(type=kind).inc()
            return False
        # a dropped alert does not start the cooldown
        if not self.sink.submit(lambda: self.notifier.send_alert(alert), label=f"alert:{kind}"):
            self.metrics.alerts_suppressed.labels(type=kind).inc()
            return False
        self.throttle.mark_sent(bot_id, kind, now)
        self.metrics.alerts_sent.labels(type=kind).inc()
        if self.throttle.path is not None:
            self.sink.submit(self._flush_throttle, label="throttle_flush")
        return True

    async def _flush_throttle(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.throttle.flush)

    def _on_order(self, bot_id: str, rec: OrderRecord) -> None:
        entry = self.entries.get(bot_id)
        name = entry.name if entry else bot_id
        if rec.status is OrderStatus.REJECTED:
            self.metrics.orders_rejected.labels(bot=bot_id).inc()
            alert_type, severity, title = AlertType.ORDER_REJECTED, AlertSeverity.WARNING, "Order rejected"
        else:
            self.metrics.orders_placed.labels(bot=bot_id, side=rec.side.value, execution=rec.execution.value).inc()
            title = "Order placed" if rec.execution.value == "live" else "Paper order (simulated)"
            alert_type, severity = AlertType.ORDER_PLACED, AlertSeverity.INFO
        self._alert(Alert(
            alert_type=alert_type,
            severity=severity,
            title=title,
            bot_id=bot_id,
            symbol=rec.symbol,
            details={
                "Bot": name,
                "Side": rec.side.value.upper(),
                "Size": rec.size,
                "Order ID": rec.id,
                "Reason": rec.trigger_context.get("reason"),
                "Error": rec.error,
            },
        ))

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _venue_for(self, cfg: BotConfig) -> ExchangePort:
        if not cfg.is_live:
            return self.paper
        venue = self.exchanges.get(cfg.exchange)
        if venue is None:
            raise ConfigError(f"no exchange client configured for {cfg.exchange}")
        return venue

    async def _resolve_product(self, cfg: BotConfig) -> BotConfig:
        """Fill lot size / contract value from product metadata, best-effort."""
        if not self.config.resolve_product_meta:
            return cfg
        if cfg.lot_size is not None and cfg.contract_value is not None:
            return cfg
        venue = self.exchanges.get(cfg.exchange)
        if venue is None:
            return cfg
        try:
            spec = await venue.get_product(cfg.symbol)
        except Exception as exc:
            log_event(log, "product_meta_error", level=logging.WARNING, symbol=cfg.symbol, err=str(exc))
            return cfg
        return cfg.with_product(spec.min_order_size, spec.contract_value)

    def _disarm_all(self) -> None:
        for entry in self.entries.values():
            entry.guard.disarm()

    async def _ensure_entry(self, bot: BotRecord) -> Optional[EngineEntry]:
        try:
            cfg = BotConfig.from_dict(bot.config).validate()
            venue = self._venue_for(cfg)
        except ConfigError as exc:
            await self._handle_invalid_config(bot, str(exc))
            return None

        cfg_hash = cfg.config_hash()
        entry = self.entries.get(bot.id)
        if entry is not None:
            if entry.config_hash != cfg_hash:
                resolved = await self._resolve_product(cfg)
                entry.engine.reconfigure(resolved)
                entry.gateway.config = resolved
                entry.gateway.exchange = venue
                entry.config_hash = cfg_hash
            entry.name = bot.name
            return entry

        resolved = await self._resolve_product(cfg)
        now = self._clock()
        snapshot = RuntimeSnapshot.from_dict(bot.runtime)
        guard = TradingGuard(stale_after_ms=self.config.stale_after_ms)
        gateway = BotOrderGateway(
            bot.id,
            resolved,
            venue,
            guard=guard,
            order_log=OrderLog(self.config.order_history_limit, snapshot.orders),
            clock=self._clock,
            on_order=self._on_order,
        )
        engine = GridEngine(bot.id, resolved, gateway, clock=self._clock)
        if bot.runtime:
            engine.hydrate(snapshot)
        engine.start()

        entry = EngineEntry(
            bot_id=bot.id,
            name=bot.name,
            engine=engine,
            gateway=gateway,
            guard=guard,
            config_hash=cfg_hash,
            created_ms=now,
            last_price_ok_ms=now,
            started_price=snapshot.started_price,
        )
        self.entries[bot.id] = entry
        self.metrics.bots_running.set(len(self.entries))
        log_event(
            log, "engine_created", bot=bot.id, symbol=resolved.symbol, mode=resolved.mode.value,
            execution=resolved.execution.value, lot_size=resolved.effective_lot_size,
        )
        return entry

    async def _handle_invalid_config(self, bot: BotRecord, error: str) -> None:
        log_event(log, "invalid_config", level=logging.ERROR, bot=bot.id, err=error)
        entry = self.entries.get(bot.id)
        if entry is not None:
            await self._stop_entry(entry, "invalid_config", entry.engine.last_price)
            return
        try:
            await self.store.mark_stopped(bot.id, "invalid_config", self._clock())
        except Exception as exc:
            log_event(log, "mark_stopped_error", level=logging.ERROR, bot=bot.id, err=str(exc))
        self._alert(Alert(
            alert_type=AlertType.INVALID_CONFIG,
            severity=AlertSeverity.WARNING,
            title="Bot config invalid, not started",
            bot_id=bot.id,
            message=error,
        ))

    async def _evict(self, bot_id: str) -> None:
        entry = self.entries.pop(bot_id, None)
        if entry is None:
            return
        entry.guard.disarm()
        await entry.engine.stop(cancel_orders=True)
        self.metrics.forget_bot(bot_id)
        self.metrics.bots_running.set(len(self.entries))
        log_event(log, "engine_evicted", bot=bot_id)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> TickSummary:
        """One pass over every running bot. Never overlaps itself."""
        async with self._tick_lock:
            started = time.perf_counter()
            summary = TickSummary()
            try:
                await self._tick(summary)
            finally:
                summary.duration_ms = (time.perf_counter() - started) * 1000.0
                self.metrics.ticks.inc()
                self.metrics.tick_duration_ms.observe(summary.duration_ms)
            return summary

    async def _tick(self, summary: TickSummary) -> None:
        try:
            bots = await self.store.load_running_bots()
        except Exception as exc:
            # unknown state: trade nothing, destroy nothing
            self._disarm_all()
            summary.store_error = True
            self.metrics.store_errors.labels(op="load").inc()
            log_event(log, "store_load_error", level=logging.ERROR, err=str(exc))
            return

        running = {b.id: b for b in bots}
        for bot_id in [bid for bid in self.entries if bid not in running]:
            await self._evict(bot_id)

        self._disarm_all()

        for bot in bots:
            summary.bots_seen += 1
            try:
                await self._process_bot(bot, summary)
            except Exception as exc:
                summary.errors += 1
                log_event(log, "bot_tick_error", level=logging.ERROR, bot=bot.id, err=f"{type(exc).__name__}: {exc}")

        self._maybe_sample_equity()

    async def _fetch_price(self, entry: EngineEntry) -> Optional[float]:
        venue = self.exchanges.get(entry.config.exchange)
        if venue is None:
            log_event(log, "price_fetch_error", level=logging.WARNING, bot=entry.bot_id, err="no price source")
            return None
        try:
            price = await venue.get_mark_price(entry.config.symbol)
        except Exception as exc:
            self.metrics.price_fetch_errors.labels(bot=entry.bot_id).inc()
            log_event(log, "price_fetch_error", level=logging.WARNING, bot=entry.bot_id, err=str(exc))
            return None
        if price is None or price <= 0:
            self.metrics.price_fetch_errors.labels(bot=entry.bot_id).inc()
            return None
        return price

    def _check_stale_feed(self, entry: EngineEntry, now: int) -> None:
        age_ms = now - entry.last_price_ok_ms
        if age_ms <= self.config.feed_stale_alert_sec * 1000:
            return
        self._alert(Alert(
            alert_type=AlertType.STALE_FEED,
            severity=AlertSeverity.WARNING,
            title="Price feed stale",
            bot_id=entry.bot_id,
            symbol=entry.config.symbol,
            details={"Bot": entry.name, "Seconds without price": round(age_ms / 1000.0, 1)},
        ))

    async def _process_bot(self, bot: BotRecord, summary: TickSummary) -> None:
        entry = await self._ensure_entry(bot)
        if entry is None:
            return

        now = self._clock()
        if now - entry.last_persist_ms < self.config.persist_interval_ms:
            return
        entry.last_persist_ms = now
        entry.guard.arm(now)
        summary.processed += 1

        price = await self._fetch_price(entry)
        if price is None:
            self._check_stale_feed(entry, now)
            return
        entry.last_price_ok_ms = now
        if entry.started_price is None:
            entry.started_price = price

        engine = entry.engine
        try:
            decision = await engine.on_price_tick(price)
        except TradingGuardError as exc:
            decision = None
            self.metrics.guard_refusals.labels(bot=entry.bot_id, code=exc.code).inc()
        except Exception as exc:
            # already recorded as a rejected OrderRecord; the level stays armed
            decision = None
            log_event(log, "order_error", level=logging.WARNING, bot=entry.bot_id, err=str(exc))
        if decision is not None:
            summary.orders_placed += 1

        verdict = evaluate(
            engine.config,
            price,
            engine.consecutive_losses,
            engine.stats.realized_pnl,
            engine.unrealized_pnl(price),
        )
        if verdict.action is RiskAction.STOP:
            await self._stop_entry(entry, verdict.reason or "risk_stop", price)
            summary.stopped.append(entry.bot_id)
            return
        if verdict.action is RiskAction.WARN:
            self._alert(Alert(
                alert_type=AlertType.CIRCUIT_BREAKER_WARNING,
                severity=AlertSeverity.WARNING,
                title="Circuit breaker close",
                bot_id=entry.bot_id,
                symbol=engine.config.symbol,
                details={
                    "Bot": entry.name,
                    "Drawdown %": round(verdict.drawdown_pct or 0.0, 2),
                    "Threshold %": engine.config.circuit_breaker_pct,
                },
            ))

        await self._persist(entry)

    async def _persist(self, entry: EngineEntry, **extra) -> None:
        engine = entry.engine
        snap = engine.snapshot(
            orders=entry.gateway.orders.to_list(),
            started_price=entry.started_price,
            **extra,
        )
        self.metrics.realized_pnl.labels(bot=entry.bot_id).set(engine.stats.realized_pnl)
        self.metrics.open_positions.labels(bot=entry.bot_id).set(len(engine.positions))
        if engine.last_price is not None:
            self.metrics.last_price.labels(bot=entry.bot_id).set(engine.last_price)
        try:
            await self.store.save_runtime_snapshot(entry.bot_id, snap)
        except Exception as exc:
            self.metrics.store_errors.labels(op="save").inc()
            log_event(log, "snapshot_persist_error", level=logging.WARNING, bot=entry.bot_id, err=str(exc))

    # ------------------------------------------------------------------
    # Stop path
    # ------------------------------------------------------------------

    async def _stop_entry(self, entry: EngineEntry, reason: str, price: Optional[float]) -> None:
        """
        Flatten, then mark stopped. A failed flatten is alerted and the stop
        still proceeds.
        """
        engine = entry.engine
        cfg = engine.config
        px = price if price is not None else engine.last_price
        flatten_error: Optional[str] = None

        # flattening is part of stopping; it must not be refused by the guard
        entry.guard.arm(self._clock())
        try:
            if cfg.is_live:
                await entry.gateway.flatten_positions(reason)
                if px is not None:
                    await engine.force_close_all(px, reason, submit_orders=False)
            elif px is not None:
                await engine.force_close_all(px, reason, submit_orders=True)
        except Exception as exc:
            flatten_error = f"{type(exc).__name__}: {exc}"
            self.metrics.flatten_failures.labels(bot=entry.bot_id).inc()
            log_event(log, "flatten_failed", level=logging.CRITICAL, bot=entry.bot_id, reason=reason, err=flatten_error)
            self._alert(Alert(
                alert_type=AlertType.FLATTEN_FAILED,
                severity=AlertSeverity.CRITICAL,
                title="Flatten failed, bot stopped anyway",
                bot_id=entry.bot_id,
                symbol=cfg.symbol,
                message="Positions may still be open on the exchange.",
                details={"Bot": entry.name, "Reason": reason, "Error": flatten_error},
            ))
        finally:
            entry.guard.disarm()

        stopped_at = self._clock()
        await self._persist(entry, stop_reason=reason, stopped_at=stopped_at)
        await engine.stop(cancel_orders=cfg.is_live)
        self.entries.pop(entry.bot_id, None)
        self.metrics.forget_bot(entry.bot_id)
        self.metrics.bots_running.set(len(self.entries))
        self.metrics.risk_stops.labels(reason=reason).inc()
        try:
            await self.store.mark_stopped(entry.bot_id, reason, stopped_at)
        except Exception as exc:
            self.metrics.store_errors.labels(op="mark_stopped").inc()
            log_event(log, "mark_stopped_error", level=logging.ERROR, bot=entry.bot_id, err=str(exc))

        log_event(
            log, "bot_stopped", level=logging.WARNING, bot=entry.bot_id, reason=reason,
            realized_pnl=engine.stats.realized_pnl, flatten_error=flatten_error,
        )
        manual = reason == "manual_stop"
        self._alert(Alert(
            alert_type=AlertType.MANUAL_STOP if manual else AlertType.RISK_STOP,
            severity=AlertSeverity.INFO if manual else AlertSeverity.CRITICAL,
            title="Bot stopped" if manual else "Risk stop",
            bot_id=entry.bot_id,
            symbol=cfg.symbol,
            details={
                "Bot": entry.name,
                "Reason": reason,
                "Price": px,
                "Realized PnL": round(engine.stats.realized_pnl, 8),
                "Flatten": "failed" if flatten_error else "ok",
            },
        ))

    async def request_stop(self, bot_id: str, reason: str = "manual_stop") -> bool:
        """
        Stop a bot through the same flatten-and-mark-stopped path as a risk
        stop. Returns False when no engine is running for `bot_id`; the bot
        is still marked stopped in the store.
        """
        async with self._tick_lock:
            entry = self.entries.get(bot_id)
            if entry is None:
                await self.store.mark_stopped(bot_id, reason, self._clock())
                return False
            await self._stop_entry(entry, reason, entry.engine.last_price)
            return True

    # ------------------------------------------------------------------
    # Equity
    # ------------------------------------------------------------------

    def _maybe_sample_equity(self) -> None:
        interval_ms = self.config.equity_interval_sec * 1000
        if interval_ms <= 0:
            return
        now = self._clock()
        if self._last_equity_ms and now - self._last_equity_ms < interval_ms:
            return
        self._last_equity_ms = now

        paper = compute_paper_equity(
            (e.config.investment, e.engine.stats.realized_pnl, e.engine.unrealized_pnl())
            for e in self.entries.values()
            if not e.config.is_live
        )
        if paper is not None:
            self.sink.submit(
                lambda: self.store.append_equity_sample("paper", paper.label, paper.value, now),
                label="equity_paper",
            )

        live_exchanges = sorted({e.config.exchange for e in self.entries.values() if e.config.is_live})
        for key in live_exchanges:
            venue = self.exchanges.get(key)
            if venue is not None:
                self.sink.submit(lambda v=venue: self._sample_live_equity(v, now), label=f"equity_live:{key}")

    async def _sample_live_equity(self, venue: ExchangePort, ts: int) -> None:
        wallets = await venue.list_wallet_balances()
        positions = await venue.list_positions()
        sample = compute_live_equity(wallets, positions)
        if sample is None:
            return
        await self.store.append_equity_sample("live", sample.label, sample.value, ts)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Tick on a fixed cadence until `stop_event` is set. A tick never overlaps the next."""
        loop = asyncio.get_running_loop()
        self.sink.start()
        self._alert(Alert(
            alert_type=AlertType.STARTUP,
            severity=AlertSeverity.INFO,
            title="GridPilot worker started",
        ))
        log_event(log, "orchestrator_started", tick_interval_sec=self.config.tick_interval_sec)
        while not stop_event.is_set():
            started = loop.time()
            try:
                await self.tick()
            except Exception as exc:
                log_event(log, "tick_error", level=logging.CRITICAL, err=f"{type(exc).__name__}: {exc}")
            delay = max(0.0, self.config.tick_interval_sec - (loop.time() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        """
        Disarm and stop every engine without cancelling orders or touching
        the running flag: bots resume from their snapshot on restart.
        """
        async with self._tick_lock:
            self._disarm_all()
            for entry in list(self.entries.values()):
                await self._persist(entry)
                await entry.engine.stop(cancel_orders=False)
            self.entries.clear()
            self.metrics.bots_running.set(0)
        self._alert(Alert(
            alert_type=AlertType.SHUTDOWN,
            severity=AlertSeverity.INFO,
            title="GridPilot worker stopped",
        ))
        await self.sink.stop()
        log_event(log, "orchestrator_shutdown")
