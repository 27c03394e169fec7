from __future__ import annotations

import logging

from tradebot.schemas import SystemLog
from tradebot.storage import Storage
from tradebot.ws import SessionHub


log = logging.getLogger(__name__)

_PY_LEVELS = {
    "INFO": logging.INFO,
    "TRADE": logging.INFO,
    "SIGNAL": logging.DEBUG,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class SystemLogger:
    """
    User-facing activity log: every entry is stored and pushed to the user's
    dashboards as ``newLog``. Entries are mirrored to the server log.
    """

    def __init__(self, storage: Storage, hub: SessionHub) -> None:
        self._storage = storage
        self._hub = hub

    async def __call__(self, user_id: int, level: str, message: str) -> SystemLog:
        log.log(_PY_LEVELS.get(level, logging.INFO), "[user %s] %s: %s", user_id, level, message)
        entry = await self._storage.create_log(user_id, level, message)
        await self._hub.broadcast(user_id, {"type": "newLog", "data": entry})
        return entry

    async def clear(self, user_id: int) -> None:
        await self._storage.clear_logs(user_id)
        await self._hub.broadcast(user_id, {"type": "logsClear"})
