from __future__ import annotations

import dataclasses
import itertools
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tradebot.broker.base import BrokerGateway, BrokerRejectedError
from tradebot.schemas import (
    AccountInfo,
    BrokerPosition,
    OrderRequest,
    OrderResponse,
    utcnow,
)


PriceSource = Callable[[str], Optional[float]]


@dataclass
class _Holding:
    qty: float = 0.0
    avg_price: float = 0.0


class SimulatedGateway(BrokerGateway):
    """
    In-process venue: market orders fill immediately at the latest known
    price, other order types rest until cancelled. Used for offline demos and
    tests; paper/live is only a label here.
    """

    def __init__(
        self,
        starting_cash: float,
        price_of: PriceSource,
        environment: str = "paper",
    ) -> None:
        self.environment = environment
        self.cash: float = float(starting_cash)
        self._price_of = price_of
        self._holdings: Dict[str, _Holding] = {}
        self._orders: Dict[str, OrderResponse] = {}
        self._ids = itertools.count(1)

    def _mark(self, symbol: str) -> float:
        px = self._price_of(symbol)
        if px is None:
            h = self._holdings.get(symbol)
            return h.avg_price if h else 0.0
        return float(px)

    def _equity(self) -> float:
        return self.cash + sum(h.qty * self._mark(s) for s, h in self._holdings.items())

    async def get_account(self) -> AccountInfo:
        equity = self._equity()
        return AccountInfo(
            id="simulated",
            cash=self.cash,
            portfolio_value=equity,
            buying_power=self.cash,
            equity=equity,
            status="ACTIVE",
        )

    async def get_positions(self) -> list[BrokerPosition]:
        out = []
        for symbol, h in self._holdings.items():
            px = self._mark(symbol)
            out.append(
                BrokerPosition(
                    asset_id=f"sim-{symbol.lower()}",
                    symbol=symbol,
                    qty=h.qty,
                    avg_entry_price=h.avg_price,
                    current_price=px,
                    market_value=h.qty * px,
                    unrealized_pl=h.qty * (px - h.avg_price),
                    unrealized_plpc=(px - h.avg_price) / h.avg_price if h.avg_price else 0.0,
                )
            )
        return out

    def _response(self, req: OrderRequest, status: str, filled_qty: float, price: Optional[float]) -> OrderResponse:
        n = next(self._ids)
        now = utcnow().isoformat()
        return OrderResponse(
            id=f"sim-order-{n}",
            client_order_id=f"sim-client-{n}",
            symbol=req.symbol,
            side=req.side,
            type=req.type,
            qty=float(req.qty),
            filled_qty=filled_qty,
            filled_avg_price=price,
            status=status,
            created_at=now,
            filled_at=now if status == "filled" else None,
            limit_price=req.limit_price,
            stop_price=req.stop_price,
        )

    def _fill(self, symbol: str, side: str, qty: float, price: float) -> None:
        h = self._holdings.get(symbol, _Holding())
        if side == "buy":
            cost = qty * price
            if cost > self.cash:
                raise BrokerRejectedError("insufficient buying power", status_code=403)
            new_qty = h.qty + qty
            h.avg_price = (h.avg_price * h.qty + price * qty) / new_qty
            h.qty = new_qty
            self.cash -= cost
            self._holdings[symbol] = h
        else:
            if h.qty < qty:
                raise BrokerRejectedError("insufficient qty available for order", status_code=403)
            h.qty -= qty
            self.cash += qty * price
            if h.qty <= 0:
                self._holdings.pop(symbol, None)

    async def submit_order(self, req: OrderRequest) -> OrderResponse:
        if req.qty <= 0:
            raise BrokerRejectedError("qty must be > 0", status_code=422)
        if req.type != "market":
            order = self._response(req, "new", 0.0, None)
            self._orders[order.id] = order
            return order

        price = self._price_of(req.symbol)
        if price is None or price <= 0:
            raise BrokerRejectedError(f"no market price for {req.symbol}", status_code=422)
        self._fill(req.symbol, req.side, float(req.qty), float(price))
        order = self._response(req, "filled", float(req.qty), float(price))
        self._orders[order.id] = order
        return order

    async def close_position(self, symbol: str) -> OrderResponse:
        h = self._holdings.get(symbol)
        if h is None or h.qty <= 0:
            raise BrokerRejectedError(f"position does not exist: {symbol}", status_code=404)
        return await self.submit_order(OrderRequest(symbol=symbol, qty=h.qty, side="sell"))

    async def get_orders(self, status: str = "all", limit: int = 100) -> list[OrderResponse]:
        orders = list(self._orders.values())
        if status == "open":
            orders = [o for o in orders if o.status == "new"]
        elif status == "closed":
            orders = [o for o in orders if o.status != "new"]
        return list(reversed(orders))[:limit]

    async def cancel_order(self, order_id: str) -> None:
        order = self._orders.get(order_id)
        if order is None or order.status != "new":
            raise BrokerRejectedError(f"order not cancelable: {order_id}", status_code=422)
        self._orders[order_id] = dataclasses.replace(order, status="canceled")
