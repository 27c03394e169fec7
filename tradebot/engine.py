from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tradebot.broker.base import BrokerGateway
from tradebot.broker.factory import (
    CredentialCheck,
    CredentialStatus,
    GatewayPool,
    build_gateway,
    check_credentials,
)
from tradebot.cache import MarketDataCache
from tradebot.config import Config
from tradebot.coordinator import SignalOrderCoordinator
from tradebot.logs import SystemLogger
from tradebot.pipeline import UpdatePipeline
from tradebot.providers.base import MarketDataProvider
from tradebot.providers.stream import MarketDataStream
from tradebot.scheduler import BotScheduler, Sleep
from tradebot.schemas import ApiKey, BotSettings, OrderRequest, OrderResponse, Tick, to_wire
from tradebot.storage import MemoryStorage, Storage
from tradebot.strategies.registry import StrategyBook
from tradebot.ws import Connection, SessionHub


log = logging.getLogger(__name__)

DEMO_USERNAME = "demo"


class CredentialsError(RuntimeError):
    def __init__(self, check: CredentialCheck) -> None:
        super().__init__(check.reason or check.status.value)
        self.check = check


@dataclass
class ClientSession:
    """Per-connection state: which user (if any) the socket authenticated as."""

    user_id: Optional[int] = None


class Engine:
    """
    The process-wide trading service. Owns the market cache, session hub,
    scheduler and per-user gateways, polls the market-data provider (and,
    when enabled, listens on the market-data stream) and routes every tick
    through the update pipeline of each interested user.
    """

    def __init__(
        self,
        cfg: Config,
        provider: MarketDataProvider,
        storage: Optional[Storage] = None,
        hub: Optional[SessionHub] = None,
        sleep: Optional[Sleep] = None,
        stream: Optional[MarketDataStream] = None,
    ) -> None:
        self.cfg = cfg
        self.provider = provider
        if storage is None:
            storage = MemoryStorage(max_logs=cfg.storage.max_logs)
        self.storage: Storage = storage
        self.hub = hub if hub is not None else SessionHub()
        self.cache = MarketDataCache(history_size=cfg.pipeline.history_window)

        self.system_log = SystemLogger(self.storage, self.hub)
        self.gateways = GatewayPool(cfg.broker, self.cache.price)
        self.strategies = StrategyBook(cfg.strategy)
        self.coordinator = SignalOrderCoordinator(cfg.coordinator, self.system_log)
        self.pipeline = UpdatePipeline(
            cfg=cfg.pipeline,
            cache=self.cache,
            hub=self.hub,
            storage=self.storage,
            strategies=self.strategies,
            coordinator=self.coordinator,
            system_log=self.system_log,
            gateway_for=self.gateway_for,
        )
        self.scheduler = BotScheduler(
            cfg=cfg.scheduler,
            storage=self.storage,
            hub=self.hub,
            system_log=self.system_log,
            gateway_for=self.gateway_for,
            reevaluate=self.pipeline.reevaluate,
            sleep=sleep or asyncio.sleep,
        )

        if stream is None and cfg.market_data.stream.enabled:
            stream = MarketDataStream(cfg.market_data.stream, cfg.app.symbols, self.dispatch_tick)
        self.stream = stream

        self._task: Optional[asyncio.Task[None]] = None
        self._stop = asyncio.Event()
        self._last_ok_ts: Dict[str, Optional[str]] = {s: None for s in cfg.app.symbols}
        self._last_err: Dict[str, Optional[str]] = {s: None for s in cfg.app.symbols}
        self._tick_count: Dict[str, int] = {s: 0 for s in cfg.app.symbols}

    # lifecycle

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())
        if self.stream is not None:
            self.stream.start()

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
        self._task = None
        if self.stream is not None:
            await self.stream.stop()
        await self.scheduler.shutdown()
        await self.gateways.aclose()

    def health(self) -> dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "engine_task_running": self._task is not None and not self._task.done(),
            "stream_connected": self.stream is not None and self.stream.connected,
            "symbols": self.cfg.app.symbols,
            "last_ok_ts": self._last_ok_ts,
            "last_error": self._last_err,
            "tick_count": self._tick_count,
            "sessions": self.hub.count(),
            "active_bots": self.scheduler.active_count(),
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "ts": datetime.now(timezone.utc).isoformat(),
            "symbols": self.cfg.app.symbols,
            "market": {sym: to_wire(t) for sym, t in self.cache.snapshot().items()},
        }

    # market feed

    async def dispatch_tick(self, tick: Tick) -> None:
        self.cache.update(tick)
        users = set(self.hub.users()) | set(self.scheduler.users())
        for user_id in sorted(users):
            try:
                await self.pipeline.handle_tick(user_id, tick)
            except Exception:
                log.exception("Tick handler failed for user %s %s", user_id, tick.symbol)

    async def _run_loop(self) -> None:
        interval = float(self.cfg.app.interval_seconds)

        while not self._stop.is_set():
            start = asyncio.get_running_loop().time()

            for symbol in self.cfg.app.symbols:
                try:
                    tick = await self.provider.get_tick(symbol)
                    self._last_ok_ts[symbol] = tick.timestamp.isoformat()
                    self._last_err[symbol] = None
                    self._tick_count[symbol] = int(self._tick_count.get(symbol, 0)) + 1
                    await self.dispatch_tick(tick)
                except Exception as e:
                    self._last_err[symbol] = f"{type(e).__name__}: {e}"
                    log.warning("Market data error for %s: %s", symbol, self._last_err[symbol])

            elapsed = asyncio.get_running_loop().time() - start
            sleep_for = max(0.0, interval - elapsed)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    # broker access

    async def gateway_for(self, user_id: int) -> CredentialCheck:
        api_key = await self.storage.get_api_key(user_id)
        return self.gateways.resolve(user_id, api_key)

    async def require_gateway(self, user_id: int) -> BrokerGateway:
        check = await self.gateway_for(user_id)
        if not check.ready or check.gateway is None:
            raise CredentialsError(check)
        return check.gateway

    # users, keys and settings

    async def ensure_default_user(self) -> int:
        user = await self.storage.get_user_by_username(DEMO_USERNAME)
        if user is not None:
            return user.id

        user = await self.storage.create_user(DEMO_USERNAME)
        await self.storage.save_bot_settings(
            user.id,
            is_active=False,
            strategy=self.cfg.strategy.default,
            risk_level=5,
            trading_frequency=self.cfg.scheduler.default_frequency,
        )
        await self.storage.create_log(user.id, "INFO", "Trading bot initialized")
        starting = float(self.cfg.broker.starting_cash)
        await self.storage.save_metrics(
            user.id, portfolio_value=starting, buying_power=starting, baseline_value=starting
        )
        return user.id

    async def save_api_key(
        self, user_id: int, api_key: str, secret_key: str, environment: str
    ) -> ApiKey:
        """
        Validate the credentials against the venue, then store them. Raises
        :class:`CredentialsError` if they are malformed or refused.
        """
        candidate = ApiKey(
            id=0, user_id=user_id, api_key=api_key, secret_key=secret_key,
            environment=environment,  # type: ignore[arg-type]
        )
        check = check_credentials(candidate)
        if not check.ready:
            raise CredentialsError(check)

        trial = build_gateway(candidate, self.cfg.broker, self.cache.price)
        try:
            await trial.get_account()
        except Exception as e:
            await trial.aclose()
            raise CredentialsError(CredentialCheck(CredentialStatus.INVALID, reason=str(e))) from e

        existing = await self.storage.get_api_key(user_id)
        stored = await self.storage.save_api_key(user_id, api_key, secret_key, environment)
        # The validated gateway becomes the user's live one.
        self.gateways.set(user_id, stored, trial)
        await self.system_log(
            user_id,
            "INFO",
            f"API keys {'updated' if existing else 'configured'} for {environment} environment",
        )
        await self.hub.broadcast(
            user_id, {"type": "apiKeyUpdate", "data": {"hasApiKey": True, "environment": environment}}
        )
        return stored

    async def update_bot_settings(self, user_id: int, **fields: Any) -> BotSettings:
        settings = await self.storage.save_bot_settings(user_id, **fields)
        if settings.is_active:
            settings = await self.start_bot(user_id)
        else:
            self.scheduler.stop(user_id)

        await self.system_log(
            user_id,
            "INFO",
            f"Bot settings updated: {'active' if settings.is_active else 'inactive'}, "
            f"strategy: {settings.strategy}",
        )
        await self.hub.broadcast(user_id, {"type": "botSettingsUpdate", "data": settings})
        return settings

    # bot lifecycle

    async def start_bot(self, user_id: int) -> BotSettings:
        settings = await self.storage.get_bot_settings(user_id)
        if settings is None:
            settings = await self.storage.save_bot_settings(user_id)

        check = await self.gateway_for(user_id)
        if not check.ready:
            self.scheduler.stop(user_id)
            if settings.is_active:
                settings = await self.storage.save_bot_settings(user_id, is_active=False)
            await self.system_log(user_id, "WARNING", f"Cannot start bot: {check.reason}")
            await self.hub.broadcast(
                user_id,
                {"type": "botStatus", "data": {"isActive": False, "reason": check.status.value}},
            )
            return settings

        if not settings.is_active:
            settings = await self.storage.save_bot_settings(user_id, is_active=True)
        self._launch(user_id, settings)
        await self.system_log(user_id, "INFO", f"Bot started with {settings.strategy} strategy")
        await self.hub.broadcast(
            user_id, {"type": "botStatus", "data": {"isActive": True, "strategy": settings.strategy}}
        )
        return settings

    async def stop_bot(self, user_id: int) -> BotSettings:
        self.scheduler.stop(user_id)
        self.strategies.forget(user_id)
        settings = await self.storage.save_bot_settings(user_id, is_active=False)
        await self.system_log(user_id, "INFO", "Bot stopped")
        await self.hub.broadcast(user_id, {"type": "botStatus", "data": {"isActive": False}})
        return settings

    def _launch(self, user_id: int, settings: BotSettings) -> None:
        # Restarting replaces any previous schedule for this user.
        self.scheduler.start(user_id, settings.trading_frequency)

    # orders

    async def submit_manual_order(self, user_id: int, req: OrderRequest) -> OrderResponse:
        gateway = await self.require_gateway(user_id)
        order = await gateway.submit_order(req)
        ref = self.cache.price(req.symbol) or req.limit_price or 0.0
        await self.pipeline.record_order(user_id, order, float(ref), manual=True)
        return order

    async def list_orders(
        self, user_id: int, status: str = "all", limit: int = 100
    ) -> list[OrderResponse]:
        gateway = await self.require_gateway(user_id)
        return await gateway.get_orders(status, limit)

    async def cancel_order(self, user_id: int, order_id: str) -> None:
        gateway = await self.require_gateway(user_id)
        await gateway.cancel_order(order_id)
        await self.system_log(user_id, "TRADE", f"Order canceled: {order_id}")
        await self.hub.broadcast(
            user_id, {"type": "orderUpdate", "data": {"id": order_id, "status": "canceled"}}
        )

    async def close_position(self, user_id: int, symbol: str) -> OrderResponse:
        gateway = await self.require_gateway(user_id)
        result = await gateway.close_position(symbol)
        await self.system_log(user_id, "TRADE", f"Position closed: {symbol}")
        pos = await self.storage.get_position(user_id, symbol)
        if pos is not None:
            await self.storage.delete_position(pos.id)
        await self.hub.broadcast(user_id, {"type": "positionClosed", "data": {"symbol": symbol}})
        return result

    # connection protocol

    async def initial_data(self, user_id: int) -> dict[str, Any]:
        pcfg = self.cfg.pipeline
        return {
            "positions": await self.storage.get_positions(user_id),
            "trades": await self.storage.get_trades(user_id, pcfg.initial_trades),
            "metrics": await self.storage.get_metrics(user_id),
            "logs": await self.storage.get_logs(user_id, pcfg.initial_logs),
            "botSettings": await self.storage.get_bot_settings(user_id),
            "hasApiKey": (await self.storage.get_api_key(user_id)) is not None,
        }

    async def authenticate(self, conn: Connection, session: ClientSession, user_id: int) -> None:
        if session.user_id is not None and session.user_id != user_id:
            self.hub.unregister(session.user_id, conn)
        session.user_id = user_id
        self.hub.register(user_id, conn)

        data = await self.initial_data(user_id)
        await conn.send_text(
            json.dumps(to_wire({"type": "initialData", "data": data}), ensure_ascii=False, default=str)
        )

        if data["hasApiKey"]:
            await self.system_log(user_id, "INFO", "WebSocket connection established")
            settings = data["botSettings"]
            if settings is not None and settings.is_active and not self.scheduler.is_running(user_id):
                await self.start_bot(user_id)

    async def handle_message(self, conn: Connection, session: ClientSession, raw: str) -> None:
        """Handle one inbound frame. Bad frames are logged and dropped."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Ignoring malformed message: %.200r", raw)
            return
        if not isinstance(msg, dict):
            log.warning("Ignoring non-object message: %.200r", raw)
            return

        kind = msg.get("type")
        if kind == "auth":
            try:
                user_id = int(msg.get("userId"))
            except (TypeError, ValueError):
                log.warning("Ignoring auth without a valid userId: %.200r", raw)
                return
            await self.authenticate(conn, session, user_id)
            return

        if session.user_id is None:
            log.warning("Ignoring %r before auth", kind)
            return

        if kind == "startBot":
            await self.start_bot(session.user_id)
        elif kind == "stopBot":
            await self.stop_bot(session.user_id)
        else:
            log.debug("Ignoring unknown message type %r", kind)

    def disconnect(self, conn: Connection, session: ClientSession) -> None:
        if session.user_id is not None:
            self.hub.unregister(session.user_id, conn)
