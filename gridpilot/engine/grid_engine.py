"""
GridEngine: per-bot state machine turning price ticks into grid trades.

Extracted from the control loop so it can be driven and tested without I/O.
Handles:
- Level crossing -> trade decision per grid mode
- Order submission through an OrderPort (the level is consumed only on success)
- Position bookkeeping and realized PnL / loss-streak counters
- Forced drain of all positions on stop
- Hot reconfigure and hydration from a persisted snapshot
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from gridpilot.core.models import (
    BotConfig,
    CrossDirection,
    EngineState,
    GridMode,
    Position,
    RuntimeSnapshot,
    Side,
    TradeStats,
)
from gridpilot.core.utils import now_ms
from gridpilot.engine.ladder import Crossing, LevelLadder
from gridpilot.execution.exchange_port import OrderIntent, OrderPort, PlacedOrder
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

MAX_SNAPSHOT_POSITIONS = 50
FORCE_CLOSE_GUARD = 500


@dataclass
class TradeAction:
    """What a crossing means for the book: open `side`, or close the opposite."""
    side: Side
    closes: bool


@dataclass
class TickDecision:
    """Outcome of a tick that placed an order."""
    crossing: Crossing
    action: TradeAction
    order: PlacedOrder
    realized_pnl: Optional[float] = None


@dataclass
class EngineStats:
    state: EngineState
    last_price: Optional[float]
    open_positions: int
    open_buys: int
    open_sells: int
    closed_trades: int
    profit_trades: int
    loss_trades: int
    realized_pnl: float
    win_rate: Optional[float]
    consecutive_losses: int
    total_level_trades: int
    active_levels: int


def decide_trade(
    mode: GridMode,
    direction: CrossDirection,
    positions: List[Position],
    max_positions: int,
) -> Optional[TradeAction]:
    """
    Map a crossing to a trade under the grid mode rules.

    long:    below -> open buy (under cap); above -> close a buy if one is open
    short:   above -> open sell (under cap); below -> close a sell if one is open
    neutral: below -> close a sell if any, else open buy; above mirrors.
             Closing ignores the cap, opening does not.
    """
    buys = sum(1 for p in positions if p.side is Side.BUY)
    sells = sum(1 for p in positions if p.side is Side.SELL)

    if mode is GridMode.LONG:
        if direction is CrossDirection.BELOW:
            return TradeAction(Side.BUY, closes=False) if buys < max_positions else None
        if direction is CrossDirection.ABOVE:
            return TradeAction(Side.SELL, closes=True) if buys > 0 else None
        return None

    if mode is GridMode.SHORT:
        if direction is CrossDirection.ABOVE:
            return TradeAction(Side.SELL, closes=False) if sells < max_positions else None
        if direction is CrossDirection.BELOW:
            return TradeAction(Side.BUY, closes=True) if sells > 0 else None
        return None

    # neutral
    if direction is CrossDirection.BELOW:
        if sells > 0:
            return TradeAction(Side.BUY, closes=True)
        return TradeAction(Side.BUY, closes=False) if len(positions) < max_positions else None
    if direction is CrossDirection.ABOVE:
        if buys > 0:
            return TradeAction(Side.SELL, closes=True)
        return TradeAction(Side.SELL, closes=False) if len(positions) < max_positions else None
    return None


class GridEngine:
    """
    One bot's grid: ladder, open positions and realized PnL counters.

    All state transitions are synchronous; the only suspension point in a
    tick is the order placement, after which bookkeeping is applied in one
    step. The engine never retries an order: a failed placement leaves the
    level untouched so the next genuine crossing can fire it.
    """

    def __init__(
        self,
        bot_id: str,
        config: BotConfig,
        order_port: OrderPort,
        clock: Callable[[], int] = now_ms,
        log_event_fn: Optional[Callable[..., None]] = None,
    ) -> None:
        self.bot_id = bot_id
        self.config = config.validate()
        self.order_port = order_port
        self._clock = clock
        self._log_event = log_event_fn or self._default_log

        self.ladder = LevelLadder(config.lower, config.upper, config.grid_count)
        self.state = EngineState.STOPPED
        self.positions: List[Position] = []
        self.stats = TradeStats()
        self.consecutive_losses = 0
        self.last_price: Optional[float] = None
        self._order_ids: List[str] = []

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log_event(log, event, level=level, bot=self.bot_id, **kwargs)

    @property
    def is_running(self) -> bool:
        return self.state is EngineState.RUNNING

    @property
    def contract_value(self) -> float:
        return self.config.effective_contract_value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Mark running. Ladder and hydrated positions are kept as-is."""
        if self.state is EngineState.RUNNING:
            return
        self.state = EngineState.RUNNING
        self._log_event("engine_started", symbol=self.config.symbol, levels=len(self.ladder))

    async def stop(self, cancel_orders: bool = True) -> None:
        """
        Stop the engine and clear local bookkeeping.

        Tracked order ids are cancelled best-effort; cancel failures are
        logged and never raised. The ladder is kept.
        """
        self.state = EngineState.STOPPED
        if cancel_orders and self._order_ids:
            ids = list(self._order_ids)
            results = await asyncio.gather(
                *(self.order_port.cancel_order(oid) for oid in ids),
                return_exceptions=True,
            )
            for oid, res in zip(ids, results):
                if isinstance(res, Exception):
                    self._log_event("order_cancel_error", level=logging.WARNING, order_id=oid, err=str(res))
        self._order_ids.clear()
        self.positions.clear()
        self.last_price = None
        self._log_event("engine_stopped", symbol=self.config.symbol)

    def reconfigure(self, config: BotConfig) -> bool:
        """
        Replace config and rebuild the ladder; positions and counters survive.

        Returns True if the ladder geometry changed.
        """
        config.validate()
        old = self.config
        self.config = config
        ladder_changed = (
            old.lower != config.lower
            or old.upper != config.upper
            or old.grid_count != config.grid_count
        )
        self.ladder.rebuild(config.lower, config.upper, config.grid_count)
        self._log_event(
            "engine_reconfigured",
            lower=config.lower,
            upper=config.upper,
            grids=config.grid_count,
            mode=config.mode.value,
            ladder_changed=ladder_changed,
        )
        return ladder_changed

    def hydrate(self, snapshot: RuntimeSnapshot) -> None:
        """Restore runtime state persisted by a previous process."""
        self.last_price = snapshot.last_price
        self.positions = [
            Position(
                side=p.side,
                quantity=p.quantity,
                entry_price=p.entry_price,
                order_id=p.order_id,
                leverage=p.leverage,
                opened_at=p.opened_at,
                symbol=p.symbol or self.config.symbol,
            )
            for p in snapshot.positions
        ]
        self.stats = TradeStats(
            closed_trades=snapshot.stats.closed_trades,
            profit_trades=snapshot.stats.profit_trades,
            loss_trades=snapshot.stats.loss_trades,
            realized_pnl=snapshot.stats.realized_pnl,
        )
        self.consecutive_losses = max(0, snapshot.consecutive_losses)
        restored = self.ladder.hydrate(snapshot.levels)
        self._log_event(
            "engine_hydrated",
            positions=len(self.positions),
            levels_restored=restored,
            closed_trades=self.stats.closed_trades,
        )

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _loss_limit_reached(self) -> bool:
        limit = self.config.max_consecutive_loss
        return limit > 0 and self.consecutive_losses >= limit

    async def on_price_tick(self, current_price: float, prev_price: Optional[float] = None) -> Optional[TickDecision]:
        """
        Process one price observation.

        `prev_price` defaults to the last price the engine saw. The first
        observation only seeds the price. Order placement errors propagate
        with the ladder and book unchanged.
        """
        prev = prev_price if prev_price is not None else self.last_price
        if prev is None:
            self.last_price = current_price
            return None

        self.last_price = current_price
        if not self.is_running:
            return None

        crossing = self.ladder.find_crossing(prev, current_price)
        if crossing is None:
            return None

        if self._loss_limit_reached():
            self._log_event(
                "trade_skipped_loss_limit",
                level=logging.DEBUG,
                consecutive_losses=self.consecutive_losses,
            )
            return None

        action = decide_trade(self.config.mode, crossing.direction, self.positions, self.config.max_positions)
        if action is None:
            return None

        # a zero size still goes to the port so the rejection is recorded
        size = self.config.order_size
        intent = OrderIntent(
            symbol=self.config.symbol,
            side=action.side,
            size=size,
            leverage=self.config.leverage,
            reduce_only=action.closes and self.config.is_live,
            trigger={
                "level_price": crossing.level.price,
                "level_id": crossing.level.id,
                "direction": crossing.direction.value,
                "prev_price": prev,
                "current_price": current_price,
                "reason": "grid_cross",
            },
        )
        order = await self.order_port.place_order(intent)

        # placement succeeded: apply bookkeeping, then consume the level
        level = crossing.level
        level.order_id = order.order_id
        level.trade_count += 1
        self._track_order(order.order_id)
        pnl: Optional[float] = None
        if action.closes:
            pnl = self._close_one(action.side.opposite, current_price, order.size or size)
        else:
            self._open(action.side, current_price, order.size or size, order.order_id)
        self.ladder.consume(level, crossing.direction)

        self._log_event(
            "grid_trade",
            side=action.side.value,
            closes=action.closes,
            level_id=level.id,
            level_price=level.price,
            direction=crossing.direction.value,
            price=current_price,
            size=size,
            order_id=order.order_id,
            pnl=pnl,
        )
        return TickDecision(crossing=crossing, action=action, order=order, realized_pnl=pnl)

    def _track_order(self, order_id: str) -> None:
        if not order_id:
            return
        self._order_ids.append(order_id)
        if len(self._order_ids) > 200:
            del self._order_ids[:-200]

    def _open(self, side: Side, price: float, size: float, order_id: str) -> Position:
        pos = Position(
            side=side,
            quantity=size,
            entry_price=price,
            order_id=order_id,
            leverage=self.config.leverage,
            opened_at=self._clock(),
            symbol=self.config.symbol,
        )
        self.positions.append(pos)
        return pos

    def _close_one(self, held_side: Side, exit_price: float, size: float) -> Optional[float]:
        """Close the oldest position on `held_side` and record its PnL."""
        for idx, pos in enumerate(self.positions):
            if pos.side is held_side:
                break
        else:
            return None
        pos = self.positions.pop(idx)
        pnl = pos.pnl_at(exit_price, self.contract_value)
        self._record_close(pnl)
        return pnl

    def _record_close(self, pnl: float) -> None:
        self.stats.record(pnl)
        if pnl < 0:
            self.consecutive_losses += 1
        elif pnl > 0:
            self.consecutive_losses = 0

    # ------------------------------------------------------------------
    # Forced close
    # ------------------------------------------------------------------

    async def force_close_all(self, price: float, reason: str, submit_orders: bool = True) -> int:
        """
        Drain every open position at `price`.

        With `submit_orders` a closing order is placed per position first
        (paper path); without it only bookkeeping is settled (live path,
        where exchange positions were flattened by the caller). Returns the
        number of positions closed.
        """
        closed = 0
        iterations = 0
        while self.positions:
            iterations += 1
            if iterations > FORCE_CLOSE_GUARD:
                self._log_event(
                    "force_close_guard_hit",
                    level=logging.ERROR,
                    remaining=len(self.positions),
                    reason=reason,
                )
                break
            pos = self.positions[0]
            if submit_orders:
                intent = OrderIntent(
                    symbol=self.config.symbol,
                    side=pos.side.opposite,
                    size=pos.quantity,
                    leverage=self.config.leverage,
                    reduce_only=True,
                    trigger={
                        "entry_price": pos.entry_price,
                        "current_price": price,
                        "reason": f"force_close:{reason}",
                    },
                )
                order = await self.order_port.place_order(intent)
                self._track_order(order.order_id)
            self.positions.pop(0)
            self._record_close(pos.pnl_at(price, self.contract_value))
            closed += 1

        if closed:
            self._log_event(
                "force_close_all",
                closed=closed,
                price=price,
                reason=reason,
                realized_pnl=self.stats.realized_pnl,
            )
        return closed

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def unrealized_pnl(self, price: Optional[float] = None) -> float:
        px = price if price is not None else self.last_price
        if px is None:
            return 0.0
        return sum(p.pnl_at(px, self.contract_value) for p in self.positions)

    def get_stats(self) -> EngineStats:
        buys = sum(1 for p in self.positions if p.side is Side.BUY)
        return EngineStats(
            state=self.state,
            last_price=self.last_price,
            open_positions=len(self.positions),
            open_buys=buys,
            open_sells=len(self.positions) - buys,
            closed_trades=self.stats.closed_trades,
            profit_trades=self.stats.profit_trades,
            loss_trades=self.stats.loss_trades,
            realized_pnl=self.stats.realized_pnl,
            win_rate=self.stats.win_rate,
            consecutive_losses=self.consecutive_losses,
            total_level_trades=self.ladder.total_trades(),
            active_levels=len(self.ladder.active_ids),
        )

    def snapshot(self, **extra: Any) -> RuntimeSnapshot:
        """Runtime state for persistence. `extra` fills the remaining snapshot fields."""
        snap = RuntimeSnapshot(
            last_price=self.last_price,
            updated_at=self._clock(),
            levels=self.ladder.snapshot(),
            positions=list(self.positions[-MAX_SNAPSHOT_POSITIONS:]),
            stats=TradeStats.from_dict(self.stats.to_dict()),
            consecutive_losses=self.consecutive_losses,
            lot_size=self.config.effective_lot_size,
            contract_value=self.contract_value,
        )
        for key, value in extra.items():
            setattr(snap, key, value)
        return snap

