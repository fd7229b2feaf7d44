"""
Domain types shared by the engine, the order path and the control loop.

The exchange adapter normalizes raw payloads into these types before
anything in the engine sees them. Persisted forms use snake_case keys;
`BotConfig.from_dict` also accepts the dashboard's camelCase spellings.
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from gridpilot.core.errors import ConfigError
from gridpilot.core.json_utils import dumps
from gridpilot.core.utils import norm_symbol, to_float


class GridMode(str, Enum):
    LONG = "long"
    SHORT = "short"
    NEUTRAL = "neutral"


class ExecutionMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class CrossDirection(str, Enum):
    NONE = "none"
    ABOVE = "above"
    BELOW = "below"


class OrderStatus(str, Enum):
    SUBMITTED = "submitted"
    FILLED = "filled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


EXCHANGES = ("delta_india", "delta_global")


def _raw_value(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)

# camelCase (dashboard) -> snake_case (engine)
_CONFIG_ALIASES = {
    "lowerRange": "lower",
    "lower_range": "lower",
    "upperRange": "upper",
    "upper_range": "upper",
    "numberOfGrids": "grid_count",
    "number_of_grids": "grid_count",
    "maxPositions": "max_positions",
    "maxConsecutiveLoss": "max_consecutive_loss",
    "circuitBreaker": "circuit_breaker_pct",
    "circuit_breaker": "circuit_breaker_pct",
    "lotSize": "lot_size",
    "contractValue": "contract_value",
}


@dataclass(frozen=True)
class BotConfig:
    """Immutable per-run bot configuration; replaced wholesale on hot reload."""
    symbol: str
    lower: float
    upper: float
    grid_count: int
    mode: GridMode = GridMode.NEUTRAL
    quantity: float = 1.0  # lots
    leverage: float = 1.0
    max_positions: int = 1
    max_consecutive_loss: int = 0  # 0 = disabled
    circuit_breaker_pct: float = 0.0  # 0 = disabled
    investment: float = 0.0  # drawdown baseline
    execution: ExecutionMode = ExecutionMode.PAPER
    exchange: str = "delta_india"
    lot_size: Optional[int] = None  # contracts per lot, resolved from product meta
    contract_value: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BotConfig":
        data: Dict[str, Any] = {}
        for key, value in raw.items():
            data[_CONFIG_ALIASES.get(key, key)] = value

        def _num(key: str, default: Optional[float] = None) -> Optional[float]:
            val = to_float(data.get(key))
            return default if val is None else val

        try:
            mode = GridMode(_raw_value(data.get("mode", "neutral")).lower())
            execution = ExecutionMode(_raw_value(data.get("execution", "paper")).lower())
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        lower = _num("lower")
        upper = _num("upper")
        grids = _num("grid_count")
        if lower is None or upper is None or grids is None:
            raise ConfigError("bot config requires lower, upper and grid_count")

        lot_size = _num("lot_size")
        contract_value = _num("contract_value")
        exchange = data.get("exchange") or "delta_india"
        return cls(
            symbol=norm_symbol(data.get("symbol")),
            lower=lower,
            upper=upper,
            grid_count=int(grids),
            mode=mode,
            quantity=_num("quantity", 1.0),
            leverage=_num("leverage", 1.0),
            max_positions=int(_num("max_positions", 1)),
            max_consecutive_loss=int(_num("max_consecutive_loss", 0)),
            circuit_breaker_pct=_num("circuit_breaker_pct", 0.0),
            investment=_num("investment", 0.0),
            execution=execution,
            exchange="delta_global" if exchange == "delta_global" else "delta_india",
            lot_size=int(lot_size) if lot_size and lot_size > 0 else None,
            contract_value=contract_value if contract_value and contract_value > 0 else None,
        )

    def validate(self) -> "BotConfig":
        if not self.symbol:
            raise ConfigError("symbol is required")
        if not self.lower < self.upper:
            raise ConfigError(f"lower ({self.lower}) must be < upper ({self.upper})")
        if self.grid_count < 2:
            raise ConfigError(f"grid_count must be >= 2, got {self.grid_count}")
        if self.quantity < 1:
            raise ConfigError(f"quantity must be at least one whole lot, got {self.quantity:g}")
        if self.leverage <= 0:
            raise ConfigError("leverage must be > 0")
        if self.max_positions < 1:
            raise ConfigError("max_positions must be >= 1")
        if self.max_consecutive_loss < 0 or self.circuit_breaker_pct < 0 or self.investment < 0:
            raise ConfigError("risk limits must be >= 0")
        return self

    @property
    def spacing(self) -> float:
        return (self.upper - self.lower) / (self.grid_count - 1)

    @property
    def effective_lot_size(self) -> int:
        return max(1, int(self.lot_size or 1))

    @property
    def effective_contract_value(self) -> float:
        return self.contract_value if self.contract_value and self.contract_value > 0 else 1.0

    @property
    def order_size(self) -> int:
        """Contracts per order: whole lots times whole lot size."""
        return int(self.quantity) * self.effective_lot_size

    @property
    def is_live(self) -> bool:
        return self.execution is ExecutionMode.LIVE

    def with_product(self, lot_size: Optional[float], contract_value: Optional[float]) -> "BotConfig":
        """Fill in product metadata the user did not set explicitly."""
        updates: Dict[str, Any] = {}
        if self.lot_size is None and lot_size and lot_size > 0:
            updates["lot_size"] = int(lot_size)
        if self.contract_value is None and contract_value and contract_value > 0:
            updates["contract_value"] = float(contract_value)
        return replace(self, **updates) if updates else self

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["mode"] = self.mode.value
        out["execution"] = self.execution.value
        return out

    def config_hash(self) -> str:
        return hashlib.sha1(dumps(self.to_dict()).encode("utf-8")).hexdigest()


@dataclass
class Level:
    id: str
    price: float
    is_active: bool = True
    last_crossed: CrossDirection = CrossDirection.NONE
    trade_count: int = 0
    order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "price": self.price,
            "is_active": self.is_active,
            "last_crossed": self.last_crossed.value,
            "trade_count": self.trade_count,
        }


@dataclass
class Position:
    side: Side
    quantity: float  # contracts
    entry_price: float
    order_id: str
    leverage: float
    opened_at: int  # ms
    symbol: str = ""

    def pnl_at(self, price: float, contract_value: float = 1.0) -> float:
        if self.side is Side.BUY:
            return (price - self.entry_price) * self.quantity * contract_value
        return (self.entry_price - price) * self.quantity * contract_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "order_id": self.order_id,
            "leverage": self.leverage,
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], default_symbol: str = "", default_leverage: float = 1.0) -> Optional["Position"]:
        try:
            side = Side(_raw_value(raw.get("side")))
        except ValueError:
            return None
        qty = to_float(raw.get("quantity"))
        entry = to_float(raw.get("entry_price", raw.get("entryPrice")))
        if qty is None or entry is None:
            return None
        opened = to_float(raw.get("opened_at", raw.get("timestampMs")))
        return cls(
            side=side,
            quantity=qty,
            entry_price=entry,
            order_id=str(raw.get("order_id", raw.get("orderId")) or ""),
            leverage=to_float(raw.get("leverage")) or default_leverage,
            opened_at=int(opened or 0),
            symbol=str(raw.get("symbol") or default_symbol),
        )


@dataclass
class OrderRecord:
    id: str
    side: Side
    type: str
    size: float
    status: OrderStatus
    created_at: int
    price: Optional[float] = None
    error: Optional[str] = None
    execution: ExecutionMode = ExecutionMode.PAPER
    symbol: str = ""
    trigger_context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "side": self.side.value,
            "type": self.type,
            "size": self.size,
            "price": self.price,
            "status": self.status.value,
            "error": self.error,
            "execution": self.execution.value,
            "symbol": self.symbol,
            "created_at": self.created_at,
            "trigger_context": dict(self.trigger_context),
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Optional["OrderRecord"]:
        try:
            return cls(
                id=str(raw["id"]),
                side=Side(_raw_value(raw.get("side"))),
                type=str(raw.get("type", raw.get("order_type", "market"))),
                size=to_float(raw.get("size")) or 0.0,
                status=OrderStatus(_raw_value(raw.get("status", "submitted"))),
                created_at=int(to_float(raw.get("created_at", raw.get("createdAtMs"))) or 0),
                price=to_float(raw.get("price")),
                error=raw.get("error"),
                execution=ExecutionMode(_raw_value(raw.get("execution", "paper"))),
                symbol=str(raw.get("symbol") or ""),
                trigger_context=dict(raw.get("trigger_context") or {}),
            )
        except (KeyError, ValueError):
            return None


@dataclass
class TradeStats:
    closed_trades: int = 0
    profit_trades: int = 0
    loss_trades: int = 0
    realized_pnl: float = 0.0

    @property
    def win_rate(self) -> Optional[float]:
        decided = self.profit_trades + self.loss_trades
        return self.profit_trades / decided if decided > 0 else None

    def record(self, pnl: float) -> None:
        self.closed_trades += 1
        self.realized_pnl += pnl
        if pnl > 0:
            self.profit_trades += 1
        elif pnl < 0:
            self.loss_trades += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "closed_trades": self.closed_trades,
            "profit_trades": self.profit_trades,
            "loss_trades": self.loss_trades,
            "realized_pnl": self.realized_pnl,
            "win_rate": self.win_rate,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "TradeStats":
        def _count(key: str, alt: str) -> int:
            val = to_float(raw.get(key, raw.get(alt)))
            return int(val) if val is not None and val >= 0 else 0

        return cls(
            closed_trades=_count("closed_trades", "closedTrades"),
            profit_trades=_count("profit_trades", "profitTrades"),
            loss_trades=_count("loss_trades", "lossTrades"),
            realized_pnl=to_float(raw.get("realized_pnl", raw.get("realizedPnl"))) or 0.0,
        )


@dataclass
class RuntimeSnapshot:
    """Last known runtime state of one bot. Overwritten in place, never versioned."""
    last_price: Optional[float] = None
    updated_at: int = 0
    levels: List[Dict[str, Any]] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    stats: TradeStats = field(default_factory=TradeStats)
    consecutive_losses: int = 0
    stop_reason: Optional[str] = None
    stopped_at: Optional[int] = None
    orders: List[OrderRecord] = field(default_factory=list)
    started_price: Optional[float] = None
    lot_size: Optional[int] = None
    contract_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_price": self.last_price,
            "updated_at": self.updated_at,
            "levels": [dict(lvl) for lvl in self.levels],
            "positions": [p.to_dict() for p in self.positions],
            "stats": self.stats.to_dict(),
            "consecutive_losses": self.consecutive_losses,
            "stop_reason": self.stop_reason,
            "stopped_at": self.stopped_at,
            "orders": [o.to_dict() for o in self.orders],
            "started_price": self.started_price,
            "lot_size": self.lot_size,
            "contract_value": self.contract_value,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "RuntimeSnapshot":
        if not raw:
            return cls()
        positions = [Position.from_dict(p) for p in raw.get("positions") or [] if isinstance(p, Mapping)]
        orders = [OrderRecord.from_dict(o) for o in raw.get("orders") or [] if isinstance(o, Mapping)]
        stats_raw = raw.get("stats", raw.get("paperStats")) or {}
        losses = to_float(raw.get("consecutive_losses", raw.get("consecutiveLosses")))
        stopped = to_float(raw.get("stopped_at"))
        lot_size = to_float(raw.get("lot_size", raw.get("lotSize")))
        return cls(
            last_price=to_float(raw.get("last_price", raw.get("lastPrice"))),
            updated_at=int(to_float(raw.get("updated_at")) or 0),
            levels=[dict(lvl) for lvl in raw.get("levels") or [] if isinstance(lvl, Mapping)],
            positions=[p for p in positions if p is not None],
            stats=TradeStats.from_dict(stats_raw) if isinstance(stats_raw, Mapping) else TradeStats(),
            consecutive_losses=int(losses) if losses and losses > 0 else 0,
            stop_reason=raw.get("stop_reason"),
            stopped_at=int(stopped) if stopped is not None else None,
            orders=[o for o in orders if o is not None],
            started_price=to_float(raw.get("started_price", raw.get("startedPrice"))),
            lot_size=int(lot_size) if lot_size else None,
            contract_value=to_float(raw.get("contract_value", raw.get("contractValue"))),
        )


@dataclass
class BotRecord:
    """A bot as stored by the dashboard collaborator."""
    id: str
    name: str
    config: Dict[str, Any]
    is_running: bool = False
    runtime: Optional[Dict[str, Any]] = None
    deleted_at: Optional[int] = None

    @property
    def is_live_running(self) -> bool:
        return self.is_running and self.deleted_at is None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BotRecord":
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            config=dict(raw.get("config") or {}),
            is_running=bool(raw.get("is_running", raw.get("isRunning", False))),
            runtime=dict(raw["runtime"]) if isinstance(raw.get("runtime"), Mapping) else None,
            deleted_at=raw.get("deleted_at", raw.get("deletedAt")),
        )
