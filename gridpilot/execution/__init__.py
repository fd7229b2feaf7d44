"""
Execution package.

Exchange port types, the Delta REST adapter, the paper venue and the
per-bot order gateway.
"""

from gridpilot.execution.delta_client import DeltaExchange, sign_request
from gridpilot.execution.exchange_port import (
    ExchangeFill,
    ExchangePort,
    ExchangePosition,
    OrderIntent,
    OrderPort,
    PlacedOrder,
    ProductSpec,
    WalletBalance,
)
from gridpilot.execution.order_gateway import BotOrderGateway, OrderLog, TradingGuard
from gridpilot.execution.order_normalizer import NormalizedSize, normalize_order_size
from gridpilot.execution.paper_exchange import PaperExchange

__all__ = [
    "BotOrderGateway",
    "DeltaExchange",
    "ExchangeFill",
    "ExchangePort",
    "ExchangePosition",
    "NormalizedSize",
    "OrderIntent",
    "OrderLog",
    "OrderPort",
    "PaperExchange",
    "PlacedOrder",
    "ProductSpec",
    "TradingGuard",
    "WalletBalance",
    "normalize_order_size",
    "sign_request",
]
