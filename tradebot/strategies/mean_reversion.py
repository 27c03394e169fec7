from __future__ import annotations

from typing import Any, Sequence

from tradebot.indicators import mean_std
from tradebot.schemas import Action, Signal, Tick
from tradebot.strategies.base import Strategy, hold


class MeanReversionStrategy(Strategy):
    key = "mean_reversion"
    name = "Mean Reversion"
    description = (
        "Trading based on the principle that asset prices tend to revert to "
        "their historical mean over time."
    )

    def __init__(
        self,
        lookback_period: int = 14,
        standard_deviations: float = 2.0,
        trend_filter: bool = True,
    ) -> None:
        self.lookback_period = int(lookback_period)
        self.standard_deviations = float(standard_deviations)
        self.trend_filter = bool(trend_filter)

    def get_parameters(self) -> dict[str, Any]:
        return {
            "lookback_period": self.lookback_period,
            "standard_deviations": self.standard_deviations,
            "trend_filter": self.trend_filter,
        }

    def analyze(self, symbol: str, recent: Sequence[Tick], historical: Sequence[Tick]) -> Signal:
        if not recent or len(historical) < self.lookback_period:
            return hold(symbol)

        prices = [float(t.price) for t in historical]
        mean, std = mean_std(prices)
        if std == 0:
            return hold(symbol)

        price = float(recent[-1].price)
        band = self.standard_deviations * std
        upper = mean + band
        lower = mean - band

        action: Action = "hold"
        confidence = 0.0
        if price < lower:
            action = "buy"
            confidence = min(abs((price - lower) / band), 1.0) * 100.0
        elif price > upper:
            action = "sell"
            confidence = min(abs((price - upper) / band), 1.0) * 100.0

        # Only buy into uptrends and sell into downtrends.
        if self.trend_filter and action != "hold" and len(prices) >= 3:
            last3 = prices[-3:]
            uptrend = last3[2] > last3[0]
            if (action == "buy" and not uptrend) or (action == "sell" and uptrend):
                return hold(symbol)

        return Signal(symbol=symbol, action=action, confidence=confidence)
