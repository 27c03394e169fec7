from __future__ import annotations

from dataclasses import dataclass
import math
import random

from tradebot.config import SimulatedMarketConfig
from tradebot.providers.base import MarketDataProvider
from tradebot.schemas import Tick, utcnow


@dataclass
class _SymbolSim:
    base: float
    price: float


class SimulatedProvider(MarketDataProvider):
    """
    Geometric random walk around a per-symbol base price. Change figures are
    reported against the base price. Useful for offline demos and UI testing.
    """

    def __init__(self, cfg: SimulatedMarketConfig):
        self._cfg = cfg
        self._rng = random.Random(cfg.seed)
        self._state: dict[str, _SymbolSim] = {}

    def _ensure(self, symbol: str) -> _SymbolSim:
        st = self._state.get(symbol)
        if st is None:
            base = float(self._cfg.base_prices.get(symbol, self._cfg.default_price))
            st = _SymbolSim(base=base, price=base)
            self._state[symbol] = st
        return st

    async def get_tick(self, symbol: str) -> Tick:
        st = self._ensure(symbol)

        # dt=1 step; r ~ N(drift, vol)
        r = float(self._rng.gauss(mu=self._cfg.drift, sigma=self._cfg.volatility))
        st.price = max(0.01, st.price * math.exp(r))

        change = st.price - st.base
        return Tick(
            symbol=symbol,
            price=float(st.price),
            timestamp=utcnow(),
            change=change,
            change_percent=change / st.base * 100.0,
        )
