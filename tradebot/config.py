from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class SimulatedMarketConfig(BaseModel):
    drift: float = 0.0
    volatility: float = 0.002
    seed: Optional[int] = None
    base_prices: dict[str, float] = Field(
        default_factory=lambda: {
            "BTCUSD": 26000.0,
            "ETHUSD": 1650.0,
            "SOLUSD": 110.0,
        }
    )
    default_price: float = 65.0


class AlpacaMarketConfig(BaseModel):
    """
    Alpaca crypto market data (latest trades). Credentials come from the
    environment, not from this file.
    """

    base_url: str = "https://data.alpaca.markets"
    feed: str = "us"
    timeout_seconds: float = 5.0
    key_env: str = "APCA_API_KEY_ID"
    secret_env: str = "APCA_API_SECRET_KEY"


class AlpacaStreamConfig(BaseModel):
    # Runs alongside the polling feed; both hand ticks to the same dispatcher.
    enabled: bool = False
    url: str = "wss://stream.data.alpaca.markets/v1beta3/crypto/us"
    channels: list[Literal["trades", "bars"]] = Field(default_factory=lambda: ["trades", "bars"])
    key_env: str = "APCA_API_KEY_ID"
    secret_env: str = "APCA_API_SECRET_KEY"
    ping_interval: float = 20.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    reconnect_multiplier: float = 2.0
    max_reconnect_attempts: int = 10


class MarketDataConfig(BaseModel):
    source: Literal["simulated", "alpaca"] = "simulated"
    simulated: SimulatedMarketConfig = Field(default_factory=SimulatedMarketConfig)
    alpaca: AlpacaMarketConfig = Field(default_factory=AlpacaMarketConfig)
    stream: AlpacaStreamConfig = Field(default_factory=AlpacaStreamConfig)


class BrokerConfig(BaseModel):
    # "simulated" fills orders in-process; "alpaca" talks to the REST API.
    # Orthogonal to paper/live, which is stored with each user's API key.
    mode: Literal["simulated", "alpaca"] = "simulated"
    paper_url: str = "https://paper-api.alpaca.markets"
    live_url: str = "https://api.alpaca.markets"
    timeout_seconds: float = 10.0
    proxy: Optional[str] = None
    starting_cash: float = 25000.0


class StrategyConfig(BaseModel):
    default: str = "mean_reversion"
    # Per-strategy parameter overrides, e.g. {"momentum": {"threshold": 0.02}}
    params: dict[str, dict[str, Any]] = Field(default_factory=dict)
    model_path: Optional[str] = None


class CoordinatorConfig(BaseModel):
    min_confidence: float = 70.0
    default_qty: float = 1.0
    min_increment: float = 0.001
    paper_risk_fraction: float = 0.1
    live_risk_fraction: float = 0.02
    time_in_force: Literal["day", "gtc", "ioc"] = "gtc"


class SchedulerConfig(BaseModel):
    intervals: dict[str, float] = Field(
        default_factory=lambda: {"low": 300.0, "medium": 60.0, "high": 10.0}
    )
    default_frequency: str = "medium"
    reevaluate: bool = False


class StorageConfig(BaseModel):
    # System logs kept per user; SIGNAL entries arrive on every evaluated tick.
    max_logs: int = Field(default=1000, ge=1)


class PipelineConfig(BaseModel):
    recent_window: int = 5
    history_window: int = 200
    initial_trades: int = 10
    initial_logs: int = 20


class AppConfig(BaseModel):
    interval_seconds: float = 1.0
    symbols: list[str] = Field(default_factory=lambda: ["BTCUSD", "ETHUSD"])
    log_level: str = "INFO"


class Config(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(config_path: str | Path) -> Config:
    p = Path(config_path)
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return Config.model_validate(data)
