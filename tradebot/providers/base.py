from __future__ import annotations

from abc import ABC, abstractmethod

from tradebot.schemas import Tick


class MarketDataProvider(ABC):
    """Source of market ticks, polled by the engine's feed loop."""

    @abstractmethod
    async def get_tick(self, symbol: str) -> Tick:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
