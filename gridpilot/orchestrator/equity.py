"""
Aggregate equity figures for the equity time series.

Live: wallet balances plus position unrealized PnL, in INR when the
exchange reports INR figures, else the settlement currency balance
(USDC, then USD, then INR). Paper: investment plus realized plus
unrealized PnL, summed over running paper bots.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from gridpilot.execution.exchange_port import ExchangePosition, WalletBalance

SETTLEMENT_PREFERENCE = ("USDC", "USD", "INR")


@dataclass(frozen=True)
class EquitySample:
    value: float
    label: str


def compute_live_equity(
    wallets: Iterable[WalletBalance],
    positions: Iterable[ExchangePosition] = (),
) -> Optional[EquitySample]:
    wallets = list(wallets)

    inr = 0.0
    has_inr = False
    for row in wallets:
        if row.balance_inr is not None:
            inr += row.balance_inr
            has_inr = True
    if has_inr:
        for pos in positions:
            if pos.unrealized_pnl_inr is not None:
                inr += pos.unrealized_pnl_inr
        return EquitySample(value=inr, label="INR")

    by_asset: Dict[str, float] = {}
    for row in wallets:
        by_asset[row.asset] = by_asset.get(row.asset, 0.0) + row.balance
    for asset in SETTLEMENT_PREFERENCE:
        if by_asset.get(asset):
            return EquitySample(value=by_asset[asset], label=asset)
    return None


def compute_paper_equity(bots: Iterable[tuple]) -> Optional[EquitySample]:
    """`bots` yields (investment, realized_pnl, unrealized_pnl) per running paper bot."""
    total = 0.0
    seen = False
    for investment, realized, unrealized in bots:
        total += (investment or 0.0) + (realized or 0.0) + (unrealized or 0.0)
        seen = True
    if not seen:
        return None
    return EquitySample(value=total, label="PAPER")
