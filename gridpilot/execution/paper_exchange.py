"""
PaperExchange: simulated venue for paper bots.

Every order fills immediately; the engine tracks positions and PnL locally,
so the venue itself holds no state.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from gridpilot.core.models import OrderStatus
from gridpilot.execution.exchange_port import (
    ExchangeFill,
    ExchangePosition,
    OrderIntent,
    PlacedOrder,
    ProductSpec,
    WalletBalance,
)


class PaperExchange:
    """Simulated fills. Prices still come from a real feed via the orchestrator."""

    def __init__(self) -> None:
        self.orders_placed = 0

    async def get_mark_price(self, symbol: str) -> Optional[float]:
        return None

    async def get_product(self, symbol: str) -> ProductSpec:
        return ProductSpec(symbol=symbol)

    async def place_order(self, intent: OrderIntent) -> PlacedOrder:
        self.orders_placed += 1
        return PlacedOrder(
            order_id=f"paper-{uuid.uuid4().hex[:16]}",
            size=intent.size,
            status=OrderStatus.FILLED,
        )

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        return None

    async def list_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        return []

    async def list_fills(self, symbol: str, since_ms: Optional[int] = None) -> List[ExchangeFill]:
        return []

    async def set_leverage(self, symbol: str, leverage: float) -> None:
        return None

    async def list_wallet_balances(self) -> List[WalletBalance]:
        return []
