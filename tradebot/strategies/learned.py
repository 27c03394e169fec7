from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Any, Optional, Sequence

from tradebot.indicators import mean_std, pct_returns, rsi
from tradebot.schemas import Action, Signal, Tick
from tradebot.strategies.base import Strategy, hold


FEATURES = ("last_return", "momentum", "volatility", "rsi", "zscore")


def extract_features(prices: Sequence[float], momentum_lookback: int = 10) -> dict[str, float]:
    """Scale-free features of a price window; all roughly in [-3, 3]."""
    returns = pct_returns(prices)
    _, ret_std = mean_std(returns)
    mean, std = mean_std(prices)
    price = prices[-1]
    past = prices[-momentum_lookback] if len(prices) >= momentum_lookback else prices[0]
    r = rsi(prices, 14)
    return {
        "last_return": returns[-1] * 100.0 if returns else 0.0,
        "momentum": (price - past) / past * 100.0 if past else 0.0,
        "volatility": ret_std * 100.0,
        "rsi": (r - 50.0) / 50.0 if r is not None else 0.0,
        "zscore": (price - mean) / std if std else 0.0,
    }


class LearnedModelStrategy(Strategy):
    """
    Scores a linear policy over engineered price features.

    The weights come from a trained model file (``{"weights": {...},
    "bias": 0.0}``) or from parameters. Training is done offline; without
    weights every call returns the hold sentinel. Orders from this strategy
    are sized by account value and confidence.
    """

    key = "reinforcement"
    name = "Reinforcement Learning"
    description = (
        "Uses a trained model to map recent market state to a trading action."
    )
    sizing = "risk"

    def __init__(
        self,
        min_history: int = 30,
        momentum_lookback: int = 10,
        prediction_threshold: float = 30.0,
        weights: Optional[dict[str, float]] = None,
        bias: float = 0.0,
        model_path: Optional[str] = None,
    ) -> None:
        self.min_history = int(min_history)
        self.momentum_lookback = int(momentum_lookback)
        self.prediction_threshold = float(prediction_threshold)
        self.weights: dict[str, float] = dict(weights or {})
        self.bias = float(bias)
        if model_path:
            self.load_model(model_path)

    @property
    def model_loaded(self) -> bool:
        return any(self.weights.get(f) for f in FEATURES)

    def load_model(self, path: str | Path) -> None:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        self.weights = {k: float(v) for k, v in (data.get("weights") or {}).items() if k in FEATURES}
        self.bias = float(data.get("bias", 0.0))

    def get_parameters(self) -> dict[str, Any]:
        return {
            "min_history": self.min_history,
            "momentum_lookback": self.momentum_lookback,
            "prediction_threshold": self.prediction_threshold,
            "weights": dict(self.weights),
            "bias": self.bias,
        }

    def analyze(self, symbol: str, recent: Sequence[Tick], historical: Sequence[Tick]) -> Signal:
        if not self.model_loaded or not recent or len(historical) < self.min_history:
            return hold(symbol)

        prices = [float(t.price) for t in historical]
        if historical[-1] != recent[-1]:
            prices.append(float(recent[-1].price))

        feats = extract_features(prices, self.momentum_lookback)
        score = self.bias + sum(self.weights.get(k, 0.0) * v for k, v in feats.items())
        confidence = math.tanh(abs(score)) * 100.0

        action: Action = "buy" if score > 0 else "sell" if score < 0 else "hold"
        if action == "hold" or confidence < self.prediction_threshold:
            return Signal(symbol=symbol, action="hold", confidence=confidence)
        return Signal(symbol=symbol, action=action, confidence=confidence)
