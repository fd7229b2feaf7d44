"""
Exchange port: the narrow contract the core consumes.

Adapters (signed REST, paper) translate exchange payloads into the
normalized types below. Nothing above this layer reads raw exchange JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from gridpilot.core.models import OrderStatus, Side


@dataclass
class OrderIntent:
    """An order the engine wants placed."""
    symbol: str
    side: Side
    size: float  # contracts, before exchange normalization
    order_type: str = "market"
    price: Optional[float] = None
    leverage: Optional[float] = None
    reduce_only: bool = False
    trigger: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlacedOrder:
    order_id: str
    size: float
    status: OrderStatus = OrderStatus.SUBMITTED


@dataclass
class ProductSpec:
    symbol: str
    product_id: Optional[int] = None
    lot_step: float = 1.0
    min_order_size: float = 1.0
    contract_value: float = 1.0
    tick_size: Optional[float] = None


@dataclass
class ExchangePosition:
    symbol: str
    side: Side
    size_abs: float
    entry_price: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    unrealized_pnl_inr: Optional[float] = None


@dataclass
class ExchangeFill:
    symbol: str
    side: Side
    size: float
    price: float
    ts: int
    order_id: Optional[str] = None
    realized_pnl: Optional[float] = None


@dataclass
class WalletBalance:
    asset: str
    balance: float
    balance_inr: Optional[float] = None


@runtime_checkable
class ExchangePort(Protocol):
    async def get_mark_price(self, symbol: str) -> Optional[float]: ...

    async def get_product(self, symbol: str) -> ProductSpec: ...

    async def place_order(self, intent: OrderIntent) -> PlacedOrder: ...

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None: ...

    async def list_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]: ...

    async def list_fills(self, symbol: str, since_ms: Optional[int] = None) -> List[ExchangeFill]: ...

    async def set_leverage(self, symbol: str, leverage: float) -> None: ...

    async def list_wallet_balances(self) -> List[WalletBalance]: ...


class OrderPort(Protocol):
    """What a grid engine needs to trade: place and cancel, nothing else."""

    async def place_order(self, intent: OrderIntent) -> PlacedOrder: ...

    async def cancel_order(self, order_id: str) -> None: ...
