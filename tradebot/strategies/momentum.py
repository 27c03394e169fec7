from __future__ import annotations

from typing import Any, Sequence

from tradebot.schemas import Action, Signal, Tick
from tradebot.strategies.base import Strategy, hold


class MomentumStrategy(Strategy):
    key = "momentum"
    name = "Momentum"
    description = "Strategy that capitalizes on the continuation of existing market trends."

    def __init__(self, lookback_period: int = 10, threshold: float = 0.03) -> None:
        self.lookback_period = int(lookback_period)
        self.threshold = float(threshold)

    def get_parameters(self) -> dict[str, Any]:
        return {"lookback_period": self.lookback_period, "threshold": self.threshold}

    def analyze(self, symbol: str, recent: Sequence[Tick], historical: Sequence[Tick]) -> Signal:
        if not recent or self.lookback_period <= 0 or len(historical) < self.lookback_period:
            return hold(symbol)

        price = float(recent[-1].price)
        past = float(historical[-self.lookback_period].price)
        if past <= 0:
            return hold(symbol)
        change = (price - past) / past

        action: Action = "hold"
        confidence = 0.0
        if change > self.threshold:
            action = "buy"
            confidence = min(change / (self.threshold * 2), 1.0) * 100.0
        elif change < -self.threshold:
            action = "sell"
            confidence = min(abs(change) / (self.threshold * 2), 1.0) * 100.0

        return Signal(symbol=symbol, action=action, confidence=confidence)
