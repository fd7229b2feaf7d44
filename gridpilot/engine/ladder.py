"""
LevelLadder - evenly spaced price levels with per-level activation state.

Handles:
- Level construction between a lower and upper bound
- Crossing detection for a single price move (one level per move)
- Consumption of a fired level (de-oscillation)
- Restoring per-level state from a persisted snapshot

No I/O and no order logic: the grid engine decides what a crossing means.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from gridpilot.core.errors import ConfigError
from gridpilot.core.models import CrossDirection, Level
from gridpilot.core.utils import norm_price


@dataclass
class Crossing:
    """A single level crossed by a price move."""
    level: Level
    direction: CrossDirection
    prev_price: float
    current_price: float


class LevelLadder:
    """
    Ordered, evenly spaced levels from `lower` to `upper` inclusive.

    Invariants:
    - exactly `grid_count` levels after every rebuild
    - levels sorted ascending by price
    - at most one level is consumed per price move
    """

    def __init__(self, lower: float, upper: float, grid_count: int) -> None:
        self.levels: List[Level] = []
        self.spacing: float = 0.0
        self.rebuild(lower, upper, grid_count)

    def rebuild(self, lower: float, upper: float, grid_count: int) -> None:
        """Recompute all levels. Destroys activation state."""
        if grid_count < 2:
            raise ConfigError(f"grid_count must be >= 2, got {grid_count}")
        if not lower < upper:
            raise ConfigError(f"lower ({lower}) must be < upper ({upper})")
        self.spacing = (upper - lower) / (grid_count - 1)
        self.levels = [
            Level(id=f"grid-{i}", price=norm_price(lower + i * self.spacing))
            for i in range(grid_count)
        ]

    def __len__(self) -> int:
        return len(self.levels)

    def get(self, level_id: str) -> Optional[Level]:
        for lvl in self.levels:
            if lvl.id == level_id:
                return lvl
        return None

    @property
    def active_ids(self) -> List[str]:
        return [lvl.id for lvl in self.levels if lvl.is_active]

    def find_crossing(self, prev_price: float, current_price: float) -> Optional[Crossing]:
        """
        Pick the first active level crossed in the direction of travel.

        A level qualifies if the move went through it (touching counts on the
        arrival side) and it has not already fired in this direction. When a
        gap crosses several levels, the one nearest the previous price wins.
        """
        if prev_price == current_price:
            return None
        moving_up = current_price > prev_price
        direction = CrossDirection.ABOVE if moving_up else CrossDirection.BELOW

        candidates: List[Level] = []
        for lvl in self.levels:
            if not lvl.is_active or lvl.last_crossed is direction:
                continue
            if moving_up:
                crossed = prev_price < lvl.price <= current_price
            else:
                crossed = prev_price > lvl.price >= current_price
            if crossed:
                candidates.append(lvl)

        if not candidates:
            return None
        candidates.sort(key=lambda lvl: abs(lvl.price - prev_price))
        return Crossing(
            level=candidates[0],
            direction=direction,
            prev_price=prev_price,
            current_price=current_price,
        )

    def consume(self, level: Level, direction: CrossDirection) -> None:
        """Deactivate the fired level and re-arm every other level."""
        level.last_crossed = direction
        level.is_active = False
        for lvl in self.levels:
            if lvl is not level:
                lvl.is_active = True

    def hydrate(self, states: Iterable[Mapping[str, Any]]) -> int:
        """Restore activation state by level id. Returns the number of levels restored."""
        by_id: Dict[str, Mapping[str, Any]] = {}
        for raw in states:
            if "id" in raw:
                by_id[str(raw["id"])] = raw

        restored = 0
        for lvl in self.levels:
            snap = by_id.get(lvl.id)
            if snap is None:
                continue
            lvl.is_active = bool(snap.get("is_active", snap.get("isActive", True)))
            raw_dir = snap.get("last_crossed", snap.get("lastCrossed"))
            try:
                lvl.last_crossed = CrossDirection(raw_dir) if raw_dir else CrossDirection.NONE
            except ValueError:
                lvl.last_crossed = CrossDirection.NONE
            lvl.trade_count = int(snap.get("trade_count", snap.get("tradeCount")) or 0)
            restored += 1
        return restored

    def snapshot(self) -> List[Dict[str, Any]]:
        return [lvl.to_dict() for lvl in self.levels]

    def total_trades(self) -> int:
        return sum(lvl.trade_count for lvl in self.levels)
