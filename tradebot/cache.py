from __future__ import annotations

from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from tradebot.schemas import Tick


class MarketDataCache:
    """
    Latest tick per symbol plus a bounded history used to build strategy
    windows. Updating with the tick that is already latest is a no-op, so the
    same tick can be fanned out to many users without duplicating history.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._history_size = int(history_size)
        self._latest: Dict[str, Tick] = {}
        self._history: Dict[str, Deque[Tick]] = defaultdict(
            lambda: deque(maxlen=self._history_size)
        )

    def update(self, tick: Tick) -> bool:
        prev = self._latest.get(tick.symbol)
        if prev is not None and prev == tick:
            return False
        self._latest[tick.symbol] = tick
        self._history[tick.symbol].append(tick)
        return True

    def latest(self, symbol: str) -> Optional[Tick]:
        return self._latest.get(symbol)

    def price(self, symbol: str) -> Optional[float]:
        t = self._latest.get(symbol)
        return float(t.price) if t is not None else None

    def history(self, symbol: str, limit: Optional[int] = None) -> list[Tick]:
        ticks = list(self._history.get(symbol, ()))
        if limit is not None:
            return ticks[-limit:] if limit > 0 else []
        return ticks

    def symbols(self) -> list[str]:
        return sorted(self._latest)

    def snapshot(self) -> dict[str, Tick]:
        return dict(self._latest)

    def __len__(self) -> int:
        return len(self._latest)
