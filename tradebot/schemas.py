from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional


Action = Literal["buy", "sell", "hold"]
Side = Literal["buy", "sell"]
LogLevel = Literal["INFO", "TRADE", "SIGNAL", "ERROR", "WARNING"]
Environment = Literal["paper", "live"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Tick:
    symbol: str
    price: float
    timestamp: datetime
    change: float = 0.0
    change_percent: float = 0.0


@dataclass(frozen=True)
class Signal:
    symbol: str
    action: Action
    confidence: float
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: int
    username: str


@dataclass
class ApiKey:
    id: int
    user_id: int
    api_key: str
    secret_key: str
    environment: Environment = "paper"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class BotSettings:
    id: int
    user_id: int
    is_active: bool = False
    strategy: str = "mean_reversion"
    risk_level: int = 5
    trading_frequency: str = "medium"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Position:
    id: int
    user_id: int
    symbol: str
    qty: float
    entry_price: float
    current_price: float
    market_value: float = 0.0
    unrealized_pl: float = 0.0
    unrealized_pl_perc: float = 0.0
    opened_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


def position_values(qty: float, entry_price: float, price: float) -> dict[str, float]:
    """Derived position fields for a mark price."""
    qty = float(qty)
    entry_price = float(entry_price)
    price = float(price)
    perc = (price - entry_price) / entry_price * 100.0 if entry_price else 0.0
    return {
        "qty": qty,
        "entry_price": entry_price,
        "current_price": price,
        "market_value": qty * price,
        "unrealized_pl": qty * (price - entry_price),
        "unrealized_pl_perc": perc,
    }


@dataclass(frozen=True)
class Trade:
    id: int
    user_id: int
    symbol: str
    side: Side
    qty: float
    price: float
    order_type: str
    status: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class PerformanceMetrics:
    id: int
    user_id: int
    portfolio_value: float
    buying_power: float
    portfolio_change: float = 0.0
    portfolio_change_perc: float = 0.0
    sharpe_ratio: float = 0.0
    win_loss_ratio: float = 0.0
    total_trades: int = 0
    profitable_trades: int = 0
    profitable_trades_perc: float = 0.0
    avg_holding_time: float = 0.0
    baseline_value: float = 0.0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SystemLog:
    id: int
    user_id: int
    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=utcnow)


# Broker boundary types. Field names follow the venue's wire format.


@dataclass(frozen=True)
class AccountInfo:
    id: str
    cash: float
    portfolio_value: float
    buying_power: float
    equity: float
    status: str = "ACTIVE"


@dataclass(frozen=True)
class BrokerPosition:
    symbol: str
    qty: float
    avg_entry_price: float
    current_price: float
    market_value: float
    unrealized_pl: float
    unrealized_plpc: float
    side: str = "long"
    asset_id: str = ""


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    qty: float
    side: Side
    type: Literal["market", "limit", "stop"] = "market"
    time_in_force: Literal["day", "gtc", "ioc"] = "gtc"
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "symbol": self.symbol,
            "qty": str(self.qty),
            "side": self.side,
            "type": self.type,
            "time_in_force": self.time_in_force,
        }
        if self.limit_price is not None:
            payload["limit_price"] = str(self.limit_price)
        if self.stop_price is not None:
            payload["stop_price"] = str(self.stop_price)
        return payload


@dataclass(frozen=True)
class OrderResponse:
    id: str
    symbol: str
    side: Side
    type: str
    qty: float
    filled_qty: float
    status: str
    created_at: str
    client_order_id: str = ""
    filled_avg_price: Optional[float] = None
    filled_at: Optional[str] = None
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status == "filled" and self.filled_qty > 0


# Boundary types keep their venue field names on the wire.
_RAW_WIRE_TYPES = (AccountInfo, BrokerPosition, OrderRequest, OrderResponse)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def to_wire(obj: Any) -> Any:
    """
    Convert dataclasses / containers into JSON-ready values for dashboard
    clients: camelCase keys, ISO-8601 datetimes.
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        camel = not isinstance(obj, _RAW_WIRE_TYPES)
        return {
            (_camel(f.name) if camel else f.name): to_wire(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: to_wire(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_wire(v) for v in obj]
    return obj
