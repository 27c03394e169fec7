from __future__ import annotations

import dataclasses
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Iterator, Optional

from tradebot.schemas import (
    ApiKey,
    BotSettings,
    PerformanceMetrics,
    Position,
    SystemLog,
    Trade,
    User,
    utcnow,
)


class Storage(ABC):
    """Per-user persisted state consumed by the engine."""

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    async def create_user(self, username: str) -> User: ...

    @abstractmethod
    async def get_api_key(self, user_id: int) -> Optional[ApiKey]: ...

    @abstractmethod
    async def save_api_key(
        self, user_id: int, api_key: str, secret_key: str, environment: str
    ) -> ApiKey: ...

    @abstractmethod
    async def get_bot_settings(self, user_id: int) -> Optional[BotSettings]: ...

    @abstractmethod
    async def save_bot_settings(self, user_id: int, **fields: Any) -> BotSettings: ...

    @abstractmethod
    async def get_positions(self, user_id: int) -> list[Position]: ...

    @abstractmethod
    async def get_position(self, user_id: int, symbol: str) -> Optional[Position]: ...

    @abstractmethod
    async def create_position(self, user_id: int, symbol: str, **fields: Any) -> Position: ...

    @abstractmethod
    async def update_position(self, position_id: int, **fields: Any) -> Optional[Position]: ...

    @abstractmethod
    async def delete_position(self, position_id: int) -> bool: ...

    @abstractmethod
    async def get_trades(self, user_id: int, limit: Optional[int] = None) -> list[Trade]: ...

    @abstractmethod
    async def count_trades(self, user_id: int) -> int: ...

    @abstractmethod
    async def create_trade(self, user_id: int, **fields: Any) -> Trade: ...

    @abstractmethod
    async def get_metrics(self, user_id: int) -> Optional[PerformanceMetrics]: ...

    @abstractmethod
    async def save_metrics(self, user_id: int, **fields: Any) -> PerformanceMetrics: ...

    @abstractmethod
    async def get_logs(self, user_id: int, limit: Optional[int] = None) -> list[SystemLog]: ...

    @abstractmethod
    async def create_log(self, user_id: int, level: str, message: str) -> SystemLog: ...

    @abstractmethod
    async def clear_logs(self, user_id: int) -> None: ...


class MemoryStorage(Storage):
    """
    Dict-backed store. Records are returned by reference; callers persist
    changes through the ``update_*``/``save_*`` methods. Each user keeps at
    most ``max_logs`` system logs, oldest dropped first.
    """

    def __init__(self, max_logs: int = 1000) -> None:
        self._ids: Dict[str, Iterator[int]] = defaultdict(lambda: itertools.count(1))
        self._users: Dict[int, User] = {}
        self._api_keys: Dict[int, ApiKey] = {}
        self._settings: Dict[int, BotSettings] = {}
        self._positions: Dict[int, Position] = {}
        self._trades: Dict[int, list[Trade]] = defaultdict(list)
        self._metrics: Dict[int, PerformanceMetrics] = {}
        self._logs: Dict[int, Deque[SystemLog]] = defaultdict(lambda: deque(maxlen=max_logs))

    def _next_id(self, table: str) -> int:
        return next(self._ids[table])

    # users

    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        for u in self._users.values():
            if u.username == username:
                return u
        return None

    async def create_user(self, username: str) -> User:
        user = User(id=self._next_id("users"), username=username)
        self._users[user.id] = user
        return user

    # api keys

    async def get_api_key(self, user_id: int) -> Optional[ApiKey]:
        return self._api_keys.get(user_id)

    async def save_api_key(
        self, user_id: int, api_key: str, secret_key: str, environment: str
    ) -> ApiKey:
        existing = self._api_keys.get(user_id)
        key = ApiKey(
            id=existing.id if existing else self._next_id("api_keys"),
            user_id=user_id,
            api_key=api_key,
            secret_key=secret_key,
            environment=environment,  # type: ignore[arg-type]
        )
        self._api_keys[user_id] = key
        return key

    # bot settings

    async def get_bot_settings(self, user_id: int) -> Optional[BotSettings]:
        return self._settings.get(user_id)

    async def save_bot_settings(self, user_id: int, **fields: Any) -> BotSettings:
        existing = self._settings.get(user_id)
        if existing is None:
            existing = BotSettings(id=self._next_id("bot_settings"), user_id=user_id)
        updated = dataclasses.replace(existing, **fields, updated_at=utcnow())
        self._settings[user_id] = updated
        return updated

    # positions

    async def get_positions(self, user_id: int) -> list[Position]:
        return [p for p in self._positions.values() if p.user_id == user_id]

    async def get_position(self, user_id: int, symbol: str) -> Optional[Position]:
        for p in self._positions.values():
            if p.user_id == user_id and p.symbol == symbol:
                return p
        return None

    async def create_position(self, user_id: int, symbol: str, **fields: Any) -> Position:
        pos = Position(id=self._next_id("positions"), user_id=user_id, symbol=symbol, **fields)
        self._positions[pos.id] = pos
        return pos

    async def update_position(self, position_id: int, **fields: Any) -> Optional[Position]:
        existing = self._positions.get(position_id)
        if existing is None:
            return None
        updated = dataclasses.replace(existing, **fields, updated_at=utcnow())
        self._positions[position_id] = updated
        return updated

    async def delete_position(self, position_id: int) -> bool:
        return self._positions.pop(position_id, None) is not None

    # trades

    async def get_trades(self, user_id: int, limit: Optional[int] = None) -> list[Trade]:
        trades = list(reversed(self._trades.get(user_id, [])))
        return trades[:limit] if limit else trades

    async def count_trades(self, user_id: int) -> int:
        return len(self._trades.get(user_id, []))

    async def create_trade(self, user_id: int, **fields: Any) -> Trade:
        trade = Trade(id=self._next_id("trades"), user_id=user_id, **fields)
        self._trades[user_id].append(trade)
        return trade

    # metrics

    async def get_metrics(self, user_id: int) -> Optional[PerformanceMetrics]:
        return self._metrics.get(user_id)

    async def save_metrics(self, user_id: int, **fields: Any) -> PerformanceMetrics:
        existing = self._metrics.get(user_id)
        if existing is None:
            metrics = PerformanceMetrics(
                id=self._next_id("metrics"),
                user_id=user_id,
                **{"portfolio_value": 0.0, "buying_power": 0.0, **fields},
            )
        else:
            metrics = dataclasses.replace(existing, **fields, updated_at=utcnow())
        self._metrics[user_id] = metrics
        return metrics

    # system logs

    async def get_logs(self, user_id: int, limit: Optional[int] = None) -> list[SystemLog]:
        logs = list(reversed(self._logs.get(user_id, [])))
        return logs[:limit] if limit else logs

    async def create_log(self, user_id: int, level: str, message: str) -> SystemLog:
        entry = SystemLog(
            id=self._next_id("logs"),
            user_id=user_id,
            level=level,  # type: ignore[arg-type]
            message=message,
        )
        self._logs[user_id].append(entry)
        return entry

    async def clear_logs(self, user_id: int) -> None:
        self._logs.pop(user_id, None)
