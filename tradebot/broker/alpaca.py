from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from tradebot.broker.base import (
    BrokerGateway,
    BrokerRejectedError,
    BrokerTransportError,
)
from tradebot.schemas import AccountInfo, BrokerPosition, OrderRequest, OrderResponse


log = logging.getLogger(__name__)


def _f(v: Any, default: float = 0.0) -> float:
    if v is None or v == "":
        return default
    return float(v)


def _opt_f(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    return float(v)


def parse_account(j: dict[str, Any]) -> AccountInfo:
    return AccountInfo(
        id=str(j.get("id", "")),
        cash=_f(j.get("cash")),
        portfolio_value=_f(j.get("portfolio_value", j.get("equity"))),
        buying_power=_f(j.get("buying_power")),
        equity=_f(j.get("equity")),
        status=str(j.get("status", "")),
    )


def parse_position(j: dict[str, Any]) -> BrokerPosition:
    return BrokerPosition(
        asset_id=str(j.get("asset_id", "")),
        symbol=str(j["symbol"]),
        qty=_f(j.get("qty")),
        avg_entry_price=_f(j.get("avg_entry_price")),
        current_price=_f(j.get("current_price")),
        market_value=_f(j.get("market_value")),
        unrealized_pl=_f(j.get("unrealized_pl")),
        unrealized_plpc=_f(j.get("unrealized_plpc")),
        side=str(j.get("side", "long")),
    )


def parse_order(j: dict[str, Any]) -> OrderResponse:
    return OrderResponse(
        id=str(j["id"]),
        client_order_id=str(j.get("client_order_id", "")),
        symbol=str(j["symbol"]),
        side=j["side"],
        type=str(j.get("type", j.get("order_type", "market"))),
        qty=_f(j.get("qty")),
        filled_qty=_f(j.get("filled_qty")),
        filled_avg_price=_opt_f(j.get("filled_avg_price")),
        status=str(j.get("status", "")),
        created_at=str(j.get("created_at", "")),
        filled_at=j.get("filled_at"),
        limit_price=_opt_f(j.get("limit_price")),
        stop_price=_opt_f(j.get("stop_price")),
    )


class AlpacaGateway(BrokerGateway):
    """
    Alpaca trading REST API (v2).

    Paper and live differ only by base URL; the environment is fixed at
    construction time.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str,
        environment: str = "paper",
        timeout_seconds: float = 10.0,
        proxy: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.environment = environment
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            proxy=proxy,
            transport=transport,
            headers={
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": secret_key,
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            r = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BrokerTransportError(f"{type(e).__name__}: {e}") from e

        if r.status_code >= 500:
            raise BrokerTransportError(f"Alpaca API Error: {r.status_code} - {r.text}")
        if r.status_code >= 400:
            raise BrokerRejectedError(
                f"Alpaca API Error: {r.status_code} - {r.text}", status_code=r.status_code
            )
        if r.status_code == 204 or not r.content:
            return None
        return r.json()

    async def get_account(self) -> AccountInfo:
        return parse_account(await self._request("GET", "/v2/account"))

    async def get_positions(self) -> list[BrokerPosition]:
        data = await self._request("GET", "/v2/positions") or []
        return [parse_position(p) for p in data]

    async def submit_order(self, req: OrderRequest) -> OrderResponse:
        return parse_order(await self._request("POST", "/v2/orders", json=req.as_payload()))

    async def close_position(self, symbol: str) -> OrderResponse:
        return parse_order(await self._request("DELETE", f"/v2/positions/{symbol}"))

    async def get_orders(self, status: str = "all", limit: int = 100) -> list[OrderResponse]:
        data = await self._request("GET", "/v2/orders", params={"status": status, "limit": limit})
        return [parse_order(o) for o in data or []]

    async def cancel_order(self, order_id: str) -> None:
        await self._request("DELETE", f"/v2/orders/{order_id}")
