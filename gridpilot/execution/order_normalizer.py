"""
Order size normalization against exchange lot rules.

Pure: floor the requested size to the lot step, reject anything that ends
up non-positive or under the exchange minimum. Decimal arithmetic keeps
steps like 0.001 from drifting.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation

from gridpilot.core.errors import OrderSizeError

_EPS = Decimal("1e-12")


@dataclass(frozen=True)
class NormalizedSize:
    size: float
    min_size: float
    step: float
    adjusted: bool  # True when rounding changed the requested size


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def normalize_order_size(requested: float, step: float = 1.0, min_size: float = 1.0) -> NormalizedSize:
    """
    Round `requested` (contracts) down to a multiple of `step`.

    Raises:
        OrderSizeError: if input is not a finite positive number, or the
        rounded size is <= 0 or below `min_size`.
    """
    if step is None or not math.isfinite(step) or step <= 0:
        step = 1.0
    if min_size is None or not math.isfinite(min_size) or min_size < 0:
        min_size = 0.0

    if requested is None or isinstance(requested, bool) or not math.isfinite(requested) or requested <= 0:
        raise OrderSizeError(
            f"invalid order size: {requested}",
            requested=requested,
            min_size=min_size,
            step=step,
        )

    try:
        d_step = _dec(step)
        units = ((_dec(requested) + _EPS) / d_step).to_integral_value(rounding=ROUND_FLOOR)
        rounded = units * d_step
    except InvalidOperation as exc:
        raise OrderSizeError(f"invalid order size: {requested}", requested, min_size, step) from exc

    size = float(rounded)
    if size <= 0:
        raise OrderSizeError(
            f"order size {requested} rounds to {size} with step {step}",
            requested=requested,
            min_size=min_size,
            step=step,
        )
    if size < min_size:
        raise OrderSizeError(
            f"order size {size} below exchange minimum {min_size}",
            requested=requested,
            min_size=min_size,
            step=step,
        )
    return NormalizedSize(size=size, min_size=min_size, step=step, adjusted=size != float(requested))
