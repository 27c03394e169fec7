from __future__ import annotations

from typing import Any, Sequence

from tradebot.indicators import ema_series
from tradebot.schemas import Action, Signal, Tick
from tradebot.strategies.base import Strategy, hold


class PPOStrategy(Strategy):
    """
    Percentage Price Oscillator: (EMA_fast - EMA_slow) / EMA_slow * 100, with a
    signal line (EMA of the PPO). Trades when the histogram crosses a threshold.
    """

    key = "ppo"
    name = "PPO (Percentage Price Oscillator)"
    description = (
        "Uses the difference between fast and slow exponential moving averages "
        "to identify market momentum."
    )

    def __init__(
        self,
        fast_period: int = 12,
        slow_period: int = 26,
        signal_period: int = 9,
        buy_threshold: float = 0.2,
        sell_threshold: float = -0.2,
    ) -> None:
        self.fast_period = int(fast_period)
        self.slow_period = int(slow_period)
        self.signal_period = int(signal_period)
        self.buy_threshold = float(buy_threshold)
        self.sell_threshold = float(sell_threshold)

    def get_parameters(self) -> dict[str, Any]:
        return {
            "fast_period": self.fast_period,
            "slow_period": self.slow_period,
            "signal_period": self.signal_period,
            "buy_threshold": self.buy_threshold,
            "sell_threshold": self.sell_threshold,
        }

    def analyze(self, symbol: str, recent: Sequence[Tick], historical: Sequence[Tick]) -> Signal:
        required = max(self.fast_period, self.slow_period, self.signal_period) * 2
        if not recent or len(historical) < required:
            return hold(symbol)

        prices = [float(t.price) for t in historical]
        if historical[-1] != recent[-1]:
            prices.append(float(recent[-1].price))

        fast = ema_series(prices, self.fast_period)
        slow = ema_series(prices, self.slow_period)
        # Align both series on the most recent samples.
        n = min(len(fast), len(slow))
        fast, slow = fast[-n:], slow[-n:]
        ppo_line = [(f - s) / s * 100.0 for f, s in zip(fast, slow) if s]
        signal_line = ema_series(ppo_line, self.signal_period)
        if len(signal_line) < 2:
            return hold(symbol)
        hist = [p - s for p, s in zip(ppo_line[-len(signal_line) :], signal_line)]

        last, prev = hist[-1], hist[-2]
        action: Action = "hold"
        confidence = 0.0
        if last > self.buy_threshold >= prev:
            action = "buy"
            confidence = min(last / (self.buy_threshold * 2), 1.0) * 100.0
        elif last < self.sell_threshold <= prev:
            action = "sell"
            confidence = min(abs(last) / (abs(self.sell_threshold) * 2), 1.0) * 100.0

        return Signal(symbol=symbol, action=action, confidence=confidence)
