from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from tradebot.config import StrategyConfig
from tradebot.strategies.base import Strategy
from tradebot.strategies.learned import LearnedModelStrategy
from tradebot.strategies.mean_reversion import MeanReversionStrategy
from tradebot.strategies.momentum import MomentumStrategy
from tradebot.strategies.ppo import PPOStrategy


log = logging.getLogger(__name__)

FALLBACK = MeanReversionStrategy.key

STRATEGIES: Dict[str, Callable[[], Strategy]] = {
    MeanReversionStrategy.key: MeanReversionStrategy,
    MomentumStrategy.key: MomentumStrategy,
    PPOStrategy.key: PPOStrategy,
    LearnedModelStrategy.key: LearnedModelStrategy,
}


def resolve_name(name: Optional[str], cfg: Optional[StrategyConfig] = None) -> str:
    if name in STRATEGIES:
        return name  # type: ignore[return-value]
    default = cfg.default if cfg is not None else FALLBACK
    if default not in STRATEGIES:
        default = FALLBACK
    if name:
        log.warning("Unknown strategy %r, falling back to %s", name, default)
    return default


def build_strategy(name: Optional[str], cfg: Optional[StrategyConfig] = None) -> Strategy:
    """Construct the strategy registered under ``name`` with configured parameters."""
    key = resolve_name(name, cfg)
    strategy = STRATEGIES[key]()
    if cfg is not None:
        params = cfg.params.get(key)
        if params:
            strategy.set_parameters(params)
        if isinstance(strategy, LearnedModelStrategy) and cfg.model_path:
            strategy.load_model(cfg.model_path)
    return strategy


class StrategyBook:
    """
    Each user's strategy instance, built once per configured strategy name
    and reused across ticks so tuned parameters stick.
    """

    def __init__(self, cfg: Optional[StrategyConfig] = None) -> None:
        self._cfg = cfg
        self._by_user: Dict[int, tuple[Optional[str], Strategy]] = {}

    def get(self, user_id: int, name: Optional[str]) -> Strategy:
        cached = self._by_user.get(user_id)
        if cached is not None and cached[0] == name:
            return cached[1]
        strategy = build_strategy(name, self._cfg)
        self._by_user[user_id] = (name, strategy)
        return strategy

    def forget(self, user_id: int) -> None:
        self._by_user.pop(user_id, None)
