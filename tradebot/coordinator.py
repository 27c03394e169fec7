from __future__ import annotations

import logging
import math
from typing import Awaitable, Callable, Optional

from tradebot.broker.base import BrokerGateway
from tradebot.config import CoordinatorConfig
from tradebot.schemas import OrderRequest, OrderResponse, Signal
from tradebot.strategies.base import Sizing


log = logging.getLogger(__name__)

LogFn = Callable[[int, str, str], Awaitable[object]]


class SignalOrderCoordinator:
    """
    Gatekeeper between strategy signals and broker orders.

    A signal becomes at most one market order, and only when it is not a
    hold and its confidence is strictly above ``min_confidence``. Submission
    is the first side effect of an order; a failed submit is logged as an
    ERROR system log and never retried.
    """

    def __init__(self, cfg: CoordinatorConfig, system_log: LogFn) -> None:
        self._cfg = cfg
        self._system_log = system_log

    @property
    def min_confidence(self) -> float:
        return float(self._cfg.min_confidence)

    def admits(self, signal: Signal) -> bool:
        return signal.action != "hold" and float(signal.confidence) > self.min_confidence

    def risk_fraction(self, environment: str, risk_level: int = 5) -> float:
        base = self._cfg.live_risk_fraction if environment == "live" else self._cfg.paper_risk_fraction
        level = min(max(int(risk_level), 1), 10)
        return float(base) * level / 5.0

    def _floor(self, qty: float) -> float:
        inc = float(self._cfg.min_increment)
        if inc <= 0:
            return qty
        steps = math.floor(qty / inc + 1e-9)
        return round(steps * inc, 10)

    def size(
        self,
        signal: Signal,
        price: float,
        sizing: Sizing = "fixed",
        account_value: Optional[float] = None,
        environment: str = "paper",
        risk_level: int = 5,
    ) -> float:
        if sizing == "fixed":
            return float(self._cfg.default_qty)
        if account_value is None or price <= 0:
            return 0.0
        notional = float(account_value) * self.risk_fraction(environment, risk_level)
        qty = notional * float(signal.confidence) / 100.0 / float(price)
        return self._floor(qty)

    def decide(
        self,
        signal: Signal,
        price: float,
        sizing: Sizing = "fixed",
        account_value: Optional[float] = None,
        environment: str = "paper",
        risk_level: int = 5,
    ) -> Optional[OrderRequest]:
        if not self.admits(signal):
            return None
        qty = self.size(signal, price, sizing, account_value, environment, risk_level)
        if qty <= 0:
            log.debug("Sized %s %s to zero, skipping", signal.action, signal.symbol)
            return None
        return OrderRequest(
            symbol=signal.symbol,
            qty=qty,
            side=signal.action,  # type: ignore[arg-type]
            type="market",
            time_in_force=self._cfg.time_in_force,
        )

    async def submit(
        self, user_id: int, gateway: BrokerGateway, req: OrderRequest
    ) -> Optional[OrderResponse]:
        try:
            return await gateway.submit_order(req)
        except Exception as e:
            log.warning("Order for user %s rejected: %s", user_id, e)
            try:
                await self._system_log(user_id, "ERROR", f"Order execution failed: {e}")
            except Exception:
                log.exception("Could not record order failure for user %s", user_id)
            return None
