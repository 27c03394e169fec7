from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Dict, Protocol, Set

from fastapi.websockets import WebSocketState

from tradebot.schemas import to_wire


log = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


def _is_open(conn: Any) -> bool:
    # Starlette websockets expose both states; fakes may expose neither.
    for attr in ("client_state", "application_state"):
        state = getattr(conn, attr, WebSocketState.CONNECTED)
        if state != WebSocketState.CONNECTED:
            return False
    return True


class SessionHub:
    """
    Live dashboard connections grouped by user id.

    A user may hold any number of connections (one per browser tab). Each
    user's broadcasts are serialized by a per-user lock so every connection
    sees messages in the order ``broadcast`` was called.
    """

    def __init__(self) -> None:
        self._sessions: Dict[int, Set[Connection]] = {}
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        # broadcasts holding or waiting on each user's lock
        self._pending: Dict[int, int] = defaultdict(int)

    def register(self, user_id: int, conn: Connection) -> None:
        self._sessions.setdefault(user_id, set()).add(conn)

    def unregister(self, user_id: int, conn: Connection) -> None:
        conns = self._sessions.get(user_id)
        if conns is None:
            return
        conns.discard(conn)
        if not conns:
            del self._sessions[user_id]
            if not self._pending.get(user_id):
                self._locks.pop(user_id, None)

    def count(self, user_id: int | None = None) -> int:
        if user_id is not None:
            return len(self._sessions.get(user_id, ()))
        return sum(len(c) for c in self._sessions.values())

    def users(self) -> list[int]:
        return list(self._sessions)

    async def broadcast(self, user_id: int, msg: dict[str, Any]) -> None:
        if user_id not in self._sessions:
            return

        payload = json.dumps(to_wire(msg), ensure_ascii=False, default=str)

        async def _send_one(c: Connection) -> None:
            if not _is_open(c):
                self.unregister(user_id, c)
                return
            try:
                await c.send_text(payload)
            except Exception as e:
                log.debug("Dropping connection for user %s: %s", user_id, e)
                self.unregister(user_id, c)

        # The lock outlives a disconnect until every queued broadcast is done,
        # so a reconnecting user still sees messages in call order.
        self._pending[user_id] += 1
        try:
            async with self._locks[user_id]:
                conns = list(self._sessions.get(user_id, ()))
                if conns:
                    await asyncio.gather(*[_send_one(c) for c in conns])
        finally:
            self._pending[user_id] -= 1
            if not self._pending[user_id]:
                del self._pending[user_id]
                if user_id not in self._sessions:
                    self._locks.pop(user_id, None)
