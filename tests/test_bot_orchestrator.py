"""
Tests for Orchestrator - the control loop over many grid engines.

Tests cover:
- Engine registry lifecycle (create, hydrate, reconfigure, evict)
- Idempotent ticks and per-bot rate limiting
- Ghost-trading guard and store read failures
- Risk stops through flatten-and-mark-stopped (paper, live, flatten failure)
- Alerts (order, stale feed, near-breaker) and equity sampling
- run_forever / shutdown
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from gridpilot.core.errors import BotStaleError, ExchangeError
from gridpilot.core.models import BotRecord, OrderStatus, Side
from gridpilot.execution.exchange_port import ExchangePosition, PlacedOrder, ProductSpec
from gridpilot.execution.paper_exchange import PaperExchange
from gridpilot.infra.async_sink import BestEffortSink
from gridpilot.monitoring.alerting import Alert, AlertSeverity, AlertType
from gridpilot.orchestrator.bot_orchestrator import Orchestrator, OrchestratorConfig


class MockStore:
    """In-memory StorePort."""

    def __init__(self, bots: List[Dict[str, Any]]):
        self.bots = {b["id"]: b for b in bots}
        self.snapshots: Dict[str, Any] = {}
        self.stopped: List[tuple] = []
        self.equity: List[tuple] = []
        self.fail_load = False
        self.loads = 0

    async def load_running_bots(self):
        self.loads += 1
        if self.fail_load:
            raise OSError("bots.json unreadable")
        records = [BotRecord.from_dict(b) for b in self.bots.values()]
        return [r for r in records if r.is_live_running]

    async def save_runtime_snapshot(self, bot_id, snapshot):
        self.snapshots[bot_id] = snapshot

    async def mark_stopped(self, bot_id, reason, ts):
        self.stopped.append((bot_id, reason, ts))
        if bot_id in self.bots:
            self.bots[bot_id]["is_running"] = False

    async def append_equity_sample(self, mode, label, value, ts=None):
        self.equity.append((mode, label, value, ts))


class MockVenue:
    """ExchangePort double with a settable mark price."""

    def __init__(self, price: float = 45000.0):
        self.price: Optional[float] = price
        self.fail_price = False
        self.fail_positions = False
        self.placed = []
        self.positions: List[ExchangePosition] = []
        self.wallets = []

    async def get_mark_price(self, symbol):
        if self.fail_price:
            raise ExchangeError("ticker timeout")
        return self.price

    async def get_product(self, symbol):
        return ProductSpec(symbol=symbol, product_id=27, lot_step=1, min_order_size=1, contract_value=1)

    async def place_order(self, intent):
        self.placed.append(intent)
        return PlacedOrder(order_id=f"live-{len(self.placed)}", size=intent.size)

    async def cancel_order(self, order_id, symbol=None):
        return None

    async def list_positions(self, symbol=None):
        if self.fail_positions:
            raise ExchangeError("positions unavailable", status=502)
        return list(self.positions)

    async def list_fills(self, symbol, since_ms=None):
        return []

    async def set_leverage(self, symbol, leverage):
        return None

    async def list_wallet_balances(self):
        return list(self.wallets)


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    async def send_alert(self, alert):
        self.alerts.append(alert)

    def types(self):
        return [a.alert_type.value for a in self.alerts]


def bot(bot_id="bot-1", running=True, runtime=None, **config):
    cfg = {
        "symbol": "BTCUSD",
        "lowerRange": 40000,
        "upperRange": 50000,
        "numberOfGrids": 11,
        "mode": "long",
        "quantity": 1,
        "maxPositions": 1,
        "execution": "paper",
    }
    cfg.update(config)
    raw = {"id": bot_id, "name": f"{bot_id} name", "config": cfg, "is_running": running}
    if runtime is not None:
        raw["runtime"] = runtime
    return raw


def make_orch(store, venue, clock, **overrides):
    notifier = RecordingNotifier()
    paper = PaperExchange()
    orch = Orchestrator(
        store=store,
        exchanges={"delta_india": venue},
        paper=paper,
        notifier=notifier,
        config=OrchestratorConfig(**overrides),
        clock=clock,
    )
    return orch, notifier, paper


async def step(orch, clock, venue, price, ms=1000):
    clock.advance(ms)
    venue.price = price
    summary = await orch.tick()
    await orch.sink.drain()
    return summary


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class TestRegistry:

    @pytest.mark.asyncio
    async def test_creates_engine_and_seeds_price(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, _, paper = make_orch(store, venue, clock)

        summary = await orch.tick()
        assert summary.bots_seen == 1
        assert summary.processed == 1
        entry = orch.entries["bot-1"]
        assert entry.engine.last_price == 45000.0
        assert entry.started_price == 45000.0
        assert entry.config.lot_size == 1
        assert paper.orders_placed == 0
        assert store.snapshots["bot-1"].last_price == 45000.0
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_idempotent_ticks_place_one_order(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, _, paper = make_orch(store, venue, clock)
        await orch.tick()
        engine = orch.entries["bot-1"].engine

        summary = await step(orch, clock, venue, 44000.0)
        assert summary.orders_placed == 1

        # immediate re-tick: rate-limited, same engine, no new order
        summary = await orch.tick()
        assert summary.processed == 0
        assert orch.entries["bot-1"].engine is engine

        # later tick at the same price: no new crossing
        await step(orch, clock, venue, 44000.0)
        assert paper.orders_placed == 1
        assert len(orch.entries) == 1
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_evicts_vanished_and_stopped_bots(self, clock):
        store, venue = MockStore([bot("a"), bot("b")]), MockVenue()
        orch, _, _ = make_orch(store, venue, clock)
        await orch.tick()
        assert set(orch.entries) == {"a", "b"}

        del store.bots["a"]
        store.bots["b"]["is_running"] = False
        await step(orch, clock, venue, 45000.0)
        assert orch.entries == {}
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_config_change_reconfigures_in_place(self, clock):
        store, venue = MockStore([bot()]), MockVenue()
        orch, _, _ = make_orch(store, venue, clock)
        await orch.tick()
        engine = orch.entries["bot-1"].engine

        store.bots["bot-1"]["config"]["upperRange"] = 60000
        store.bots["bot-1"]["config"]["numberOfGrids"] = 21
        await step(orch, clock, venue, 45000.0)
        assert orch.entries["bot-1"].engine is engine
        assert len(engine.ladder) == 21
        assert engine.config.upper == 60000
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_invalid_config_marks_stopped(self, clock):
        store, venue = MockStore([bot(lowerRange=50000, upperRange=40000)]), MockVenue()
        orch, notifier, _ = make_orch(store, venue, clock)
        await orch.tick()
        await orch.sink.drain()
        assert orch.entries == {}
        assert store.stopped[0][:2] == ("bot-1", "invalid_config")
        assert "invalid_config" in notifier.types()
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_hydrates_from_runtime(self, clock):
        runtime = {
            "last_price": 44200.0,
            "positions": [{"side": "buy", "quantity": 1, "entry_price": 44000.0, "order_id": "p1"}],
            "stats": {"closed_trades": 4, "profit_trades": 3, "loss_trades": 1, "realized_pnl": 250.0},
            "levels": [{"id": "grid-4", "is_active": False, "last_crossed": "below"}],
            "started_price": 46000.0,
        }
        store, venue = MockStore([bot(runtime=runtime)]), MockVenue(44500.0)
        orch, _, _ = make_orch(store, venue, clock)
        await orch.tick()
        entry = orch.entries["bot-1"]
        assert len(entry.engine.positions) == 1
        assert entry.engine.stats.closed_trades == 4
        assert entry.started_price == 46000.0
        assert entry.engine.ladder.get("grid-4").is_active is False
        await orch.sink.stop()


# ─────────────────────────────────────────────────────────────────────────────
# Ghost-trading guard
# ─────────────────────────────────────────────────────────────────────────────


class TestGhostGuard:

    @pytest.mark.asyncio
    async def test_stale_engine_refuses_orders(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, _, paper = make_orch(store, venue, clock)
        await orch.tick()
        entry = orch.entries["bot-1"]

        clock.advance(6000)
        with pytest.raises(BotStaleError):
            await entry.engine.on_price_tick(44000.0)
        assert paper.orders_placed == 0
        assert entry.gateway.orders.latest().status is OrderStatus.REJECTED
        assert entry.gateway.orders.latest().error == "bot_stale"
        assert entry.engine.ladder.get("grid-4").is_active is True
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_store_failure_disarms_without_evicting(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, _, _ = make_orch(store, venue, clock)
        await orch.tick()
        store.fail_load = True

        summary = await step(orch, clock, venue, 44000.0)
        assert summary.store_error is True
        entry = orch.entries["bot-1"]
        assert entry.guard.allow_trading is False
        assert entry.engine.positions == []
        await orch.sink.stop()


# ─────────────────────────────────────────────────────────────────────────────
# Stop path
# ─────────────────────────────────────────────────────────────────────────────


class TestStopPath:

    @pytest.mark.asyncio
    async def test_paper_out_of_range_force_closes_and_stops(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, notifier, paper = make_orch(store, venue, clock)
        await orch.tick()
        await step(orch, clock, venue, 44000.0)
        assert len(orch.entries["bot-1"].engine.positions) == 1

        summary = await step(orch, clock, venue, 39000.0)
        assert summary.stopped == ["bot-1"]
        assert orch.entries == {}
        assert paper.orders_placed == 2
        assert store.stopped[-1][:2] == ("bot-1", "out_of_range")

        snap = store.snapshots["bot-1"]
        assert snap.stop_reason == "out_of_range"
        assert snap.stats.realized_pnl == pytest.approx(39000.0 - 44000.0)
        assert snap.positions == []
        assert snap.orders[0].trigger_context["reason"] == "force_close:out_of_range"
        assert "risk_stop" in notifier.types()
        assert notifier.types().count("order_placed") == 2
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_live_stop_flattens_exchange_positions(self, clock):
        store, venue = MockStore([bot(execution="live")]), MockVenue(45000.0)
        venue.positions = [ExchangePosition(symbol="BTCUSD", side=Side.BUY, size_abs=2)]
        orch, _, paper = make_orch(store, venue, clock)
        await orch.tick()

        await step(orch, clock, venue, 51000.0)
        assert orch.entries == {}
        assert paper.orders_placed == 0
        flatten = venue.placed[-1]
        assert flatten.side is Side.SELL
        assert flatten.reduce_only is True
        assert flatten.size == 2
        assert store.stopped[-1][:2] == ("bot-1", "out_of_range")
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_flatten_failure_alerts_and_still_stops(self, clock):
        store, venue = MockStore([bot(execution="live")]), MockVenue(45000.0)
        venue.fail_positions = True
        orch, notifier, _ = make_orch(store, venue, clock)
        await orch.tick()

        await step(orch, clock, venue, 39000.0)
        assert orch.entries == {}
        assert store.stopped[-1][:2] == ("bot-1", "out_of_range")
        types = notifier.types()
        assert "flatten_failed" in types
        assert "risk_stop" in types
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_loss_streak_from_hydrated_state_stops(self, clock):
        store = MockStore([bot(maxConsecutiveLoss=3, runtime={"last_price": 45000.0, "consecutive_losses": 3})])
        venue = MockVenue(45000.0)
        orch, _, _ = make_orch(store, venue, clock)
        summary = await orch.tick()
        assert summary.stopped == ["bot-1"]
        assert store.stopped[-1][1] == "max_consecutive_loss_3"
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_manual_stop(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, notifier, _ = make_orch(store, venue, clock)
        await orch.tick()

        assert await orch.request_stop("bot-1") is True
        await orch.sink.drain()
        assert orch.entries == {}
        assert store.stopped[-1][:2] == ("bot-1", "manual_stop")
        assert "manual_stop" in notifier.types()

        assert await orch.request_stop("ghost") is False
        assert store.stopped[-1][:2] == ("ghost", "manual_stop")
        await orch.sink.stop()


# ─────────────────────────────────────────────────────────────────────────────
# Alerts and equity
# ─────────────────────────────────────────────────────────────────────────────


class TestAlertsAndEquity:

    @pytest.mark.asyncio
    async def test_price_failure_skips_then_alerts_stale_feed(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, notifier, _ = make_orch(store, venue, clock)
        await orch.tick()
        venue.fail_price = True

        await step(orch, clock, venue, 0.0, ms=5000)
        assert "stale_feed" not in notifier.types()
        assert "bot-1" in orch.entries

        await step(orch, clock, venue, 0.0, ms=11000)
        assert notifier.types().count("stale_feed") == 1

        # throttled on the next failing tick
        await step(orch, clock, venue, 0.0, ms=2000)
        assert notifier.types().count("stale_feed") == 1
        assert store.stopped == []
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_circuit_breaker_warning(self, clock):
        runtime = {
            "last_price": 45000.0,
            "positions": [{"side": "buy", "quantity": 1, "entry_price": 45000.0, "order_id": "p1"}],
        }
        store = MockStore([bot(runtime=runtime, circuitBreaker=10, investment=1000)])
        venue = MockVenue(44915.0)
        orch, notifier, _ = make_orch(store, venue, clock)
        await orch.tick()
        await orch.sink.drain()
        assert "circuit_breaker_warning" in notifier.types()
        assert "bot-1" in orch.entries
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_alert_dropped_by_full_sink_keeps_cooldown_open(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, notifier, _ = make_orch(store, venue, clock)
        orch.sink = BestEffortSink(maxsize=1, name="tiny")

        async def noop():
            return None

        assert orch.sink.submit(noop, label="filler")
        alert = Alert(AlertType.STALE_FEED, AlertSeverity.WARNING, "feed stale", bot_id="bot-1")
        assert orch._alert(alert) is False
        assert orch.throttle.can_send("bot-1", "stale_feed", clock())
        assert orch.metrics.registry.get_sample_value("alerts_suppressed_total", {"type": "stale_feed"}) == 1.0

        await orch.sink.drain()
        assert orch._alert(alert) is True
        await orch.sink.drain()
        assert notifier.types() == ["stale_feed"]
        assert not orch.throttle.can_send("bot-1", "stale_feed", clock())
        await orch.sink.stop()

    @pytest.mark.asyncio
    async def test_paper_equity_sampled(self, clock):
        store, venue = MockStore([bot(investment=1000)]), MockVenue(45000.0)
        orch, _, _ = make_orch(store, venue, clock)
        await orch.tick()
        await orch.sink.drain()
        assert store.equity == [("paper", "PAPER", 1000.0, clock())]

        # inside the sampling interval: nothing new
        await step(orch, clock, venue, 45000.0)
        assert len(store.equity) == 1
        await orch.sink.stop()


class TestRunLoop:

    @pytest.mark.asyncio
    async def test_run_forever_until_stop_event(self, clock):
        store, venue = MockStore([bot()]), MockVenue(45000.0)
        orch, notifier, _ = make_orch(store, venue, clock, tick_interval_sec=0.01)
        stop_event = asyncio.Event()

        task = asyncio.create_task(orch.run_forever(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert store.loads >= 2
        await orch.shutdown()
        assert orch.entries == {}
        assert store.stopped == []  # bots stay running across restarts
        assert notifier.types()[0] == "startup"
        assert notifier.types()[-1] == "shutdown"
