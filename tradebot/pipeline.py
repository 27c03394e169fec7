from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from tradebot.broker.factory import CredentialCheck
from tradebot.cache import MarketDataCache
from tradebot.config import PipelineConfig
from tradebot.coordinator import SignalOrderCoordinator
from tradebot.logs import SystemLogger
from tradebot.metrics import compute_metrics
from tradebot.schemas import BotSettings, OrderResponse, Position, Signal, Tick, position_values
from tradebot.storage import Storage
from tradebot.strategies.registry import StrategyBook
from tradebot.ws import SessionHub


log = logging.getLogger(__name__)

GatewayResolver = Callable[[int], Awaitable[CredentialCheck]]

# Remaining quantity below this is treated as fully closed.
_QTY_EPSILON = 1e-9


class UpdatePipeline:
    """
    Per-tick handler for one user.

    Steps run in order and each is gated on the previous one succeeding:

    1. cache update (always)
    2. ``marketData`` broadcast (always)
    3. position re-pricing, only if the user holds the symbol
    4. strategy evaluation, only while the user's bot is active
    5. order decision, only for admitted signals

    A failing step is logged and ends the handler; nothing propagates to the
    caller.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        cache: MarketDataCache,
        hub: SessionHub,
        storage: Storage,
        strategies: StrategyBook,
        coordinator: SignalOrderCoordinator,
        system_log: SystemLogger,
        gateway_for: GatewayResolver,
    ) -> None:
        self._cfg = cfg
        self._cache = cache
        self._hub = hub
        self._storage = storage
        self._strategies = strategies
        self._coordinator = coordinator
        self._system_log = system_log
        self._gateway_for = gateway_for
        self._last_signals: Dict[int, Dict[str, Signal]] = {}

    def last_signals(self, user_id: int) -> dict[str, Signal]:
        return dict(self._last_signals.get(user_id, {}))

    async def handle_tick(self, user_id: int, tick: Tick) -> None:
        try:
            self._cache.update(tick)
        except Exception:
            log.exception("Cache update failed for %s", tick.symbol)
            return

        try:
            await self._hub.broadcast(user_id, {"type": "marketData", "data": tick})
        except Exception:
            log.exception("marketData broadcast failed for user %s", user_id)
            return

        try:
            await self.reprice_position(user_id, tick)
        except Exception:
            log.exception("Position update failed for user %s %s", user_id, tick.symbol)
            return

        await self.evaluate(user_id, tick)

    async def reprice_position(self, user_id: int, tick: Tick) -> Optional[Position]:
        pos = await self._storage.get_position(user_id, tick.symbol)
        if pos is None:
            return None
        updated = await self._storage.update_position(
            pos.id, **position_values(pos.qty, pos.entry_price, tick.price)
        )
        if updated is not None:
            await self._hub.broadcast(user_id, {"type": "positionUpdate", "data": updated})
        return updated

    async def evaluate(self, user_id: int, tick: Tick) -> Optional[OrderResponse]:
        """Steps 4 and 5: score the symbol and, if warranted, place an order."""
        try:
            settings = await self._storage.get_bot_settings(user_id)
            if settings is None or not settings.is_active:
                return None
            signal, sizing = await self._score(user_id, settings, tick)
        except Exception as e:
            log.exception("Strategy evaluation failed for user %s %s", user_id, tick.symbol)
            await self._report(user_id, f"Strategy evaluation failed for {tick.symbol}: {e}")
            return None

        if not self._coordinator.admits(signal):
            return None

        try:
            return await self._order(user_id, settings, signal, sizing, tick)
        except Exception as e:
            log.exception("Order handling failed for user %s %s", user_id, tick.symbol)
            await self._report(user_id, f"Order handling failed for {tick.symbol}: {e}")
            return None

    async def _report(self, user_id: int, message: str) -> None:
        # The ERROR log itself may fail (storage down); that must not escape.
        try:
            await self._system_log(user_id, "ERROR", message)
        except Exception:
            log.exception("Could not record error log for user %s", user_id)

    async def _score(self, user_id: int, settings: BotSettings, tick: Tick) -> tuple[Signal, str]:
        strategy = self._strategies.get(user_id, settings.strategy)
        # historical: everything before the current tick; recent: ends with it
        window = self._cache.history(tick.symbol, self._cfg.history_window + 1)
        if not window or window[-1] != tick:
            window.append(tick)
        recent = window[-max(self._cfg.recent_window, 1) :]
        historical = window[:-1]
        signal = strategy.analyze(tick.symbol, recent, historical)
        self._last_signals.setdefault(user_id, {})[tick.symbol] = signal

        await self._system_log(
            user_id,
            "SIGNAL",
            f"{strategy.name} {signal.action} signal detected for {signal.symbol} "
            f"(confidence: {signal.confidence:.1f}%)",
        )
        await self._hub.broadcast(user_id, {"type": "strategySignal", "data": signal})
        return signal, strategy.sizing

    async def _order(
        self,
        user_id: int,
        settings: BotSettings,
        signal: Signal,
        sizing: str,
        tick: Tick,
    ) -> Optional[OrderResponse]:
        check = await self._gateway_for(user_id)
        if not check.ready or check.gateway is None:
            log.debug("No order for user %s: %s", user_id, check.status.value)
            return None
        gateway = check.gateway

        account_value = None
        if sizing == "risk":
            try:
                account = await gateway.get_account()
            except Exception as e:
                await self._system_log(user_id, "ERROR", f"Account lookup failed: {e}")
                return None
            account_value = account.portfolio_value

        req = self._coordinator.decide(
            signal,
            price=tick.price,
            sizing=sizing,  # type: ignore[arg-type]
            account_value=account_value,
            environment=gateway.environment,
            risk_level=settings.risk_level,
        )
        if req is None:
            return None

        order = await self._coordinator.submit(user_id, gateway, req)
        if order is None:
            return None

        await self.record_order(user_id, order, tick.price, manual=False)
        return order

    async def record_order(
        self, user_id: int, order: OrderResponse, reference_price: float, manual: bool
    ) -> None:
        """Persist an acknowledged order and publish its effects."""
        if manual:
            msg = f"Manual {order.side.upper()} order submitted: {order.qty:g} {order.symbol} @ {order.type} price"
        else:
            msg = f"{order.side.upper()} order executed: {order.qty:g} {order.symbol} @ market price"
        await self._system_log(user_id, "TRADE", msg)

        price = order.filled_avg_price if order.filled_avg_price is not None else reference_price
        await self._storage.create_trade(
            user_id,
            symbol=order.symbol,
            side=order.side,
            qty=order.qty,
            price=float(price),
            order_type=order.type,
            status=order.status,
        )
        await self._hub.broadcast(user_id, {"type": "orderUpdate", "data": order})

        if order.is_filled:
            await self.apply_fill(user_id, order, float(price))
        await self.refresh_metrics(user_id)

    async def apply_fill(self, user_id: int, order: OrderResponse, price: float) -> None:
        qty = float(order.filled_qty)
        pos = await self._storage.get_position(user_id, order.symbol)

        if order.side == "buy":
            if pos is None:
                pos = await self._storage.create_position(
                    user_id, order.symbol, **position_values(qty, price, price)
                )
            else:
                new_qty = pos.qty + qty
                entry = (pos.entry_price * pos.qty + price * qty) / new_qty
                pos = await self._storage.update_position(
                    pos.id, **position_values(new_qty, entry, price)
                )
            await self._hub.broadcast(user_id, {"type": "positionUpdate", "data": pos})
            return

        if pos is None:
            return
        remaining = pos.qty - qty
        if remaining <= _QTY_EPSILON:
            await self._storage.delete_position(pos.id)
            await self._hub.broadcast(user_id, {"type": "positionClosed", "data": {"symbol": order.symbol}})
            return
        pos = await self._storage.update_position(
            pos.id, **position_values(remaining, pos.entry_price, price)
        )
        await self._hub.broadcast(user_id, {"type": "positionUpdate", "data": pos})

    async def refresh_metrics(self, user_id: int) -> None:
        positions = await self._storage.get_positions(user_id)
        previous = await self._storage.get_metrics(user_id)
        total = await self._storage.count_trades(user_id)
        await self._storage.save_metrics(user_id, **compute_metrics(positions, None, total, previous))

    async def reevaluate(self, user_id: int) -> None:
        """Re-score every cached symbol for the user (scheduler hook)."""
        for symbol in self._cache.symbols():
            tick = self._cache.latest(symbol)
            if tick is not None:
                await self.evaluate(user_id, tick)
