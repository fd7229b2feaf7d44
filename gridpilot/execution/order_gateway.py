"""
BotOrderGateway: the only path from a grid engine to an exchange.

Handles:
- Ghost-trading guard (refuse unless the control loop armed the bot this tick)
- Size normalization against product lot rules
- Best-effort leverage sync before live orders
- OrderRecord log, including rejections, so every non-trade is explainable
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from gridpilot.core.errors import BotNotTradingError, BotStaleError, ExchangeError, TradingGuardError
from gridpilot.core.models import BotConfig, OrderRecord, OrderStatus, Side
from gridpilot.core.utils import now_ms
from gridpilot.execution.exchange_port import (
    ExchangePort,
    OrderIntent,
    PlacedOrder,
    ProductSpec,
)
from gridpilot.execution.order_normalizer import normalize_order_size
from gridpilot.infra.logging_cfg import log_event

log = logging.getLogger("gridpilot")

ORDER_LOG_LIMIT = 120


@dataclass
class TradingGuard:
    """
    Per-bot arming flag owned by the control loop.

    The loop disarms every bot at the start of a tick and re-arms only bots
    confirmed running. An order attempt on a disarmed or stale bot is a
    hard refusal.
    """
    allow_trading: bool = False
    last_seen_ms: int = 0
    stale_after_ms: int = 5000

    def arm(self, now: int) -> None:
        self.allow_trading = True
        self.last_seen_ms = now

    def disarm(self) -> None:
        self.allow_trading = False

    def check(self, bot_id: str, now: int) -> None:
        if not self.allow_trading:
            raise BotNotTradingError(bot_id)
        age = now - self.last_seen_ms
        if age > self.stale_after_ms:
            raise BotStaleError(bot_id, f"last_seen_ms_ago={age}")


class OrderLog:
    """Bounded order history, newest first."""

    def __init__(self, limit: int = ORDER_LOG_LIMIT, initial: Optional[List[OrderRecord]] = None) -> None:
        self._orders: Deque[OrderRecord] = deque(maxlen=limit)
        for rec in reversed(initial or []):
            self._orders.appendleft(rec)

    def add(self, record: OrderRecord) -> None:
        self._orders.appendleft(record)

    def __len__(self) -> int:
        return len(self._orders)

    def latest(self) -> Optional[OrderRecord]:
        return self._orders[0] if self._orders else None

    def to_list(self) -> List[OrderRecord]:
        return list(self._orders)


class BotOrderGateway:
    """
    OrderPort for one bot.

    Live bots route to the configured exchange; paper bots route to the
    paper venue. Either way every attempt lands in the order log.
    """

    def __init__(
        self,
        bot_id: str,
        config: BotConfig,
        exchange: ExchangePort,
        guard: Optional[TradingGuard] = None,
        order_log: Optional[OrderLog] = None,
        clock: Callable[[], int] = now_ms,
        on_order: Optional[Callable[[str, OrderRecord], None]] = None,
    ) -> None:
        self.bot_id = bot_id
        self.config = config
        self.exchange = exchange
        self.guard = guard or TradingGuard()
        self.orders = order_log or OrderLog()
        self._clock = clock
        self._on_order = on_order
        self.leverage_applied: Optional[float] = None
        self._rejections = 0

    def _record(
        self,
        order_id: str,
        intent: OrderIntent,
        size: float,
        status: OrderStatus,
        error: Optional[str] = None,
    ) -> OrderRecord:
        rec = OrderRecord(
            id=order_id,
            side=intent.side,
            type=intent.order_type,
            size=size,
            status=status,
            created_at=self._clock(),
            price=intent.price,
            error=error,
            execution=self.config.execution,
            symbol=intent.symbol,
            trigger_context=dict(intent.trigger),
        )
        self.orders.add(rec)
        if self._on_order is not None:
            self._on_order(self.bot_id, rec)
        return rec

    def _reject_id(self) -> str:
        self._rejections += 1
        return f"rejected-{self._clock()}-{self._rejections}"

    async def _product(self) -> ProductSpec:
        if self.config.is_live:
            return await self.exchange.get_product(self.config.symbol)
        try:
            return await self.exchange.get_product(self.config.symbol)
        except ExchangeError:
            return ProductSpec(symbol=self.config.symbol)

    async def sync_leverage(self, leverage: Optional[float]) -> None:
        """Apply leverage if it differs from the last applied value. Never raises."""
        if leverage is None or leverage <= 0 or leverage == self.leverage_applied:
            return
        try:
            await self.exchange.set_leverage(self.config.symbol, leverage)
        except Exception as exc:
            log_event(
                log, "leverage_sync_failed", level=logging.WARNING,
                bot=self.bot_id, symbol=self.config.symbol, leverage=leverage, err=str(exc),
            )
            return
        self.leverage_applied = leverage
        log_event(log, "leverage_synced", bot=self.bot_id, symbol=self.config.symbol, leverage=leverage)

    async def place_order(self, intent: OrderIntent) -> PlacedOrder:
        try:
            self.guard.check(self.bot_id, self._clock())
        except TradingGuardError as exc:
            log_event(
                log, "ghost_trade_refused", level=logging.CRITICAL,
                bot=self.bot_id, code=exc.code, side=intent.side.value,
            )
            self._record(self._reject_id(), intent, intent.size, OrderStatus.REJECTED, error=exc.code)
            raise

        return await self._submit(intent)

    async def _submit(self, intent: OrderIntent) -> PlacedOrder:
        size = intent.size
        try:
            product = await self._product()
            size = normalize_order_size(intent.size, product.lot_step, product.min_order_size).size
            sized = OrderIntent(
                symbol=intent.symbol,
                side=intent.side,
                size=size,
                order_type=intent.order_type,
                price=intent.price,
                leverage=intent.leverage,
                reduce_only=intent.reduce_only,
                trigger=intent.trigger,
            )
            if self.config.is_live:
                await self.sync_leverage(intent.leverage)
            placed = await self.exchange.place_order(sized)
        except Exception as exc:
            self._record(self._reject_id(), intent, size, OrderStatus.REJECTED, error=str(exc))
            log_event(
                log, "order_rejected", level=logging.WARNING,
                bot=self.bot_id, side=intent.side.value, size=size, err=str(exc),
            )
            raise

        status = placed.status if not self.config.is_live else OrderStatus.SUBMITTED
        self._record(placed.order_id, intent, placed.size or size, status)
        return PlacedOrder(order_id=placed.order_id, size=placed.size or size, status=status)

    async def cancel_order(self, order_id: str) -> None:
        if not self.config.is_live:
            return
        await self.exchange.cancel_order(order_id, self.config.symbol)

    async def flatten_positions(self, reason: str) -> int:
        """
        Close every exchange position on this bot's symbol with reduce-only
        market orders. Bypasses the trading guard: flattening is how a stop
        completes. Returns the number of closing orders placed.
        """
        positions = await self.exchange.list_positions(self.config.symbol)
        placed = 0
        for pos in positions:
            if pos.size_abs <= 0:
                continue
            close_side = Side.SELL if pos.side is Side.BUY else Side.BUY
            intent = OrderIntent(
                symbol=self.config.symbol,
                side=close_side,
                size=pos.size_abs,
                reduce_only=True,
                trigger={"reason": f"flatten:{reason}", "position_size": pos.size_abs},
            )
            await self._submit(intent)
            placed += 1
        log_event(log, "positions_flattened", bot=self.bot_id, symbol=self.config.symbol, orders=placed, reason=reason)
        return placed
