from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from tradebot.broker.factory import CredentialCheck
from tradebot.config import SchedulerConfig
from tradebot.logs import SystemLogger
from tradebot.metrics import compute_metrics
from tradebot.storage import Storage
from tradebot.ws import SessionHub


log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
GatewayResolver = Callable[[int], Awaitable[CredentialCheck]]
Reevaluate = Callable[[int], Awaitable[None]]


class SchedulerHandle:
    """
    A single user's recurring bot task. The first tick fires one interval
    after ``start``. ``stop`` cancels synchronously: once it returns no new
    tick will begin.
    """

    def __init__(
        self,
        user_id: int,
        interval: float,
        on_tick: Callable[[int, "SchedulerHandle"], Awaitable[None]],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.user_id = user_id
        self.interval = float(interval)
        self._on_tick = on_tick
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._stopped = False
        self.ticks = 0

    def start(self) -> None:
        if self._task is not None or self._stopped:
            raise RuntimeError(f"scheduler handle for user {self.user_id} already used")
        self._task = asyncio.create_task(self._run(), name=f"bot-scheduler-{self.user_id}")

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()

    def is_running(self) -> bool:
        return self._task is not None and not self._stopped and not self._task.done()

    async def wait_stopped(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._stopped:
            await self._sleep(self.interval)
            if self._stopped:
                return
            self.ticks += 1
            try:
                await self._on_tick(self.user_id, self)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The tick callback reports its own failures; this only guards the loop.
                log.exception("Scheduler tick crashed for user %s", self.user_id)


class BotScheduler:
    """
    Per-user periodic reconciliation with the broker.

    Each tick pulls the account and positions, upserts the positions into
    storage, replaces the performance metrics and broadcasts an
    ``accountUpdate``. A failing tick is reported as an ERROR system log and
    the schedule carries on.
    """

    def __init__(
        self,
        cfg: SchedulerConfig,
        storage: Storage,
        hub: SessionHub,
        system_log: SystemLogger,
        gateway_for: GatewayResolver,
        reevaluate: Optional[Reevaluate] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cfg = cfg
        self._storage = storage
        self._hub = hub
        self._system_log = system_log
        self._gateway_for = gateway_for
        self._reevaluate = reevaluate
        self._sleep = sleep
        self._handles: Dict[int, SchedulerHandle] = {}

    def interval_for(self, frequency: Optional[str]) -> float:
        intervals = self._cfg.intervals
        if frequency in intervals:
            return float(intervals[frequency])  # type: ignore[index]
        return float(intervals.get(self._cfg.default_frequency, 60.0))

    def start(self, user_id: int, frequency: Optional[str]) -> SchedulerHandle:
        self.stop(user_id)
        handle = SchedulerHandle(user_id, self.interval_for(frequency), self._tick, self._sleep)
        self._handles[user_id] = handle
        handle.start()
        log.info("Scheduler started for user %s every %.0fs", user_id, handle.interval)
        return handle

    def stop(self, user_id: int) -> bool:
        handle = self._handles.pop(user_id, None)
        if handle is None:
            return False
        handle.stop()
        log.info("Scheduler stopped for user %s", user_id)
        return True

    def handle(self, user_id: int) -> Optional[SchedulerHandle]:
        return self._handles.get(user_id)

    def is_running(self, user_id: int) -> bool:
        h = self._handles.get(user_id)
        return h is not None and h.is_running()

    def is_current(self, user_id: int, handle: SchedulerHandle) -> bool:
        return self._handles.get(user_id) is handle and handle.is_running()

    def users(self) -> list[int]:
        return list(self._handles)

    def active_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.is_running())

    async def shutdown(self) -> None:
        handles = list(self._handles.values())
        for user_id in list(self._handles):
            self.stop(user_id)
        for h in handles:
            await h.wait_stopped()

    async def _tick(self, user_id: int, handle: SchedulerHandle) -> None:
        try:
            await self.reconcile(user_id, handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Bot update error for user %s: %s", user_id, e)
            await self._system_log(user_id, "ERROR", f"Bot update error: {e}")

    async def reconcile(self, user_id: int, handle: Optional[SchedulerHandle] = None) -> None:
        check = await self._gateway_for(user_id)
        if not check.ready or check.gateway is None:
            raise RuntimeError(check.reason or check.status.value)
        gateway = check.gateway

        account = await gateway.get_account()
        broker_positions = await gateway.get_positions()

        for bp in broker_positions:
            fields = {
                "qty": bp.qty,
                "entry_price": bp.avg_entry_price,
                "current_price": bp.current_price,
                "market_value": bp.market_value,
                "unrealized_pl": bp.unrealized_pl,
                "unrealized_pl_perc": bp.unrealized_plpc * 100.0,
            }
            existing = await self._storage.get_position(user_id, bp.symbol)
            if existing is not None:
                await self._storage.update_position(existing.id, **fields)
            else:
                await self._storage.create_position(user_id, bp.symbol, **fields)

        positions = await self._storage.get_positions(user_id)
        previous = await self._storage.get_metrics(user_id)
        total_trades = await self._storage.count_trades(user_id)
        metrics = await self._storage.save_metrics(
            user_id, **compute_metrics(positions, account, total_trades, previous)
        )

        # A stop (or restart) that raced this tick wins; don't publish stale state.
        if handle is not None and not self.is_current(user_id, handle):
            return

        await self._hub.broadcast(
            user_id,
            {
                "type": "accountUpdate",
                "data": {"account": account, "positions": positions, "metrics": metrics},
            },
        )

        if self._cfg.reevaluate and self._reevaluate is not None:
            await self._reevaluate(user_id)
