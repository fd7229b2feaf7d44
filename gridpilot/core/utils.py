"""
Utility helpers.
"""

from __future__ import annotations

import math
import time
from typing import Any, Iterable, Mapping, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


def to_float(value: Any) -> Optional[float]:
    """Parse numbers that may arrive as strings; non-finite and junk become None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        out = float(value)
    elif isinstance(value, str):
        try:
            out = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return out if math.isfinite(out) else None


def pick_float(payload: Mapping[str, Any], keys: Iterable[str]) -> Optional[float]:
    """First parseable number among several possible field spellings."""
    for key in keys:
        val = to_float(payload.get(key))
        if val is not None:
            return val
    return None


def norm_price(px: float) -> float:
    """Round to 8 decimals to keep float noise out of level comparisons."""
    return round(float(px), 8)


def norm_symbol(symbol: Any) -> str:
    return str(symbol or "").strip().upper()
