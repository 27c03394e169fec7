from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Literal, Sequence

from tradebot.schemas import Signal, Tick


Sizing = Literal["fixed", "risk"]


def hold(symbol: str) -> Signal:
    """The "not enough data" answer every strategy falls back to."""
    return Signal(symbol=symbol, action="hold", confidence=0.0)


def _coerce(current: Any, value: Any) -> Any:
    """Cast ``value`` to the type of the parameter it replaces."""
    if current is None:
        return value
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return type(current)(value)


class Strategy(ABC):
    key: ClassVar[str]
    name: ClassVar[str]
    description: ClassVar[str] = ""
    sizing: ClassVar[Sizing] = "fixed"

    @abstractmethod
    def analyze(
        self,
        symbol: str,
        recent: Sequence[Tick],
        historical: Sequence[Tick],
    ) -> Signal:
        """
        Score the latest data for ``symbol``.

        ``recent`` ends with the newest tick. Must be a pure function of its
        arguments and must return ``hold(symbol)`` when there is not enough
        data rather than raising.
        """
        raise NotImplementedError

    @abstractmethod
    def get_parameters(self) -> dict[str, Any]:
        raise NotImplementedError

    def set_parameters(self, params: dict[str, Any]) -> None:
        # Unknown keys are ignored so one config map can carry any strategy.
        current = self.get_parameters()
        for k, v in params.items():
            if k in current:
                setattr(self, k, _coerce(current[k], v))

    def describe(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "sizing": self.sizing,
            "parameters": self.get_parameters(),
        }
