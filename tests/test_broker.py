import json

import httpx
import pytest

from tradebot.broker.alpaca import AlpacaGateway, parse_order
from tradebot.broker.base import BrokerRejectedError, BrokerTransportError
from tradebot.broker.factory import CredentialStatus, GatewayPool, check_credentials
from tradebot.broker.simulated import SimulatedGateway
from tradebot.config import BrokerConfig
from tradebot.schemas import ApiKey, OrderRequest


def _key(api_key="PK", secret="SK", environment="paper"):
    return ApiKey(id=1, user_id=1, api_key=api_key, secret_key=secret, environment=environment)


def test_check_credentials_statuses():
    assert check_credentials(None).status is CredentialStatus.MISSING
    assert check_credentials(_key(api_key=" ")).status is CredentialStatus.INVALID
    assert check_credentials(_key(environment="sandbox")).status is CredentialStatus.INVALID
    ok = check_credentials(_key())
    assert ok.ready
    assert ok.status.value == "ready"


def test_gateway_pool_caches_until_key_changes():
    pool = GatewayPool(BrokerConfig(), lambda s: 100.0)
    first = pool.resolve(1, _key()).gateway
    assert pool.resolve(1, _key()).gateway is first

    live = pool.resolve(1, _key(environment="live")).gateway
    assert live is not first
    assert live.environment == "live"

    missing = pool.resolve(2, None)
    assert not missing.ready
    assert missing.gateway is None


@pytest.mark.asyncio
async def test_gateway_pool_adopts_gateway_and_closes_replaced_one():
    pool = GatewayPool(BrokerConfig(), lambda s: 100.0)
    built = pool.resolve(1, _key()).gateway
    adopted = SimulatedGateway(starting_cash=1.0, price_of=lambda s: 100.0)

    pool.set(1, _key(api_key="PK2"), adopted)

    assert pool.resolve(1, _key(api_key="PK2")).gateway is adopted
    closed = []
    built.aclose = lambda: _record(closed, "built")
    adopted.aclose = lambda: _record(closed, "adopted")
    await pool.aclose()
    assert sorted(closed) == ["adopted", "built"]


async def _record(sink, name):
    sink.append(name)


@pytest.mark.asyncio
async def test_simulated_market_orders_fill_at_latest_price():
    prices = {"BTCUSD": 20_000.0}
    gw = SimulatedGateway(starting_cash=50_000.0, price_of=prices.get)

    order = await gw.submit_order(OrderRequest(symbol="BTCUSD", qty=2, side="buy"))
    assert order.is_filled
    assert order.filled_avg_price == 20_000.0

    prices["BTCUSD"] = 21_000.0
    account = await gw.get_account()
    assert account.cash == pytest.approx(10_000.0)
    assert account.portfolio_value == pytest.approx(52_000.0)

    (pos,) = await gw.get_positions()
    assert pos.qty == 2
    assert pos.unrealized_pl == pytest.approx(2_000.0)
    assert pos.unrealized_plpc == pytest.approx(0.05)

    closed = await gw.close_position("BTCUSD")
    assert closed.side == "sell"
    assert await gw.get_positions() == []
    assert (await gw.get_account()).cash == pytest.approx(52_000.0)


@pytest.mark.asyncio
async def test_simulated_rejections():
    gw = SimulatedGateway(starting_cash=1_000.0, price_of={"ETHUSD": 2_000.0}.get)

    with pytest.raises(BrokerRejectedError, match="insufficient buying power"):
        await gw.submit_order(OrderRequest(symbol="ETHUSD", qty=1, side="buy"))
    with pytest.raises(BrokerRejectedError, match="insufficient qty"):
        await gw.submit_order(OrderRequest(symbol="ETHUSD", qty=0.1, side="sell"))
    with pytest.raises(BrokerRejectedError, match="no market price"):
        await gw.submit_order(OrderRequest(symbol="XRPUSD", qty=1, side="buy"))
    with pytest.raises(BrokerRejectedError):
        await gw.submit_order(OrderRequest(symbol="ETHUSD", qty=0, side="buy"))
    with pytest.raises(BrokerRejectedError):
        await gw.close_position("ETHUSD")

    assert (await gw.get_account()).cash == 1_000.0


@pytest.mark.asyncio
async def test_simulated_resting_orders_can_be_cancelled():
    gw = SimulatedGateway(starting_cash=1_000.0, price_of=lambda s: None)
    order = await gw.submit_order(
        OrderRequest(symbol="ETHUSD", qty=0.1, side="buy", type="limit", limit_price=1_500.0)
    )
    assert order.status == "new"
    assert [o.id for o in await gw.get_orders("open")] == [order.id]

    await gw.cancel_order(order.id)
    assert await gw.get_orders("open") == []
    assert (await gw.get_orders("closed"))[0].status == "canceled"
    with pytest.raises(BrokerRejectedError):
        await gw.cancel_order(order.id)


def _alpaca(handler):
    return AlpacaGateway(
        api_key="PK",
        secret_key="SK",
        base_url="https://paper-api.alpaca.markets",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_alpaca_account_and_headers():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers["APCA-API-KEY-ID"]
        seen["secret"] = request.headers["APCA-API-SECRET-KEY"]
        return httpx.Response(
            200,
            json={"id": "a1", "cash": "100.5", "portfolio_value": "250.0", "buying_power": "200", "equity": "250.0", "status": "ACTIVE"},
        )

    gw = _alpaca(handler)
    account = await gw.get_account()
    await gw.aclose()

    assert seen == {"path": "/v2/account", "key": "PK", "secret": "SK"}
    assert account.cash == 100.5
    assert account.portfolio_value == 250.0


@pytest.mark.asyncio
async def test_alpaca_submit_order_posts_payload():
    captured = {}

    def handler(request):
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "o1",
                "symbol": "ETH/USD",
                "side": "buy",
                "type": "market",
                "qty": "0.5",
                "filled_qty": "0.5",
                "filled_avg_price": "2000.1",
                "status": "filled",
                "created_at": "2024-01-01T00:00:00Z",
            },
        )

    gw = _alpaca(handler)
    order = await gw.submit_order(OrderRequest(symbol="ETHUSD", qty=0.5, side="buy"))
    await gw.aclose()

    assert captured["method"] == "POST"
    assert captured["body"] == {
        "symbol": "ETHUSD",
        "qty": "0.5",
        "side": "buy",
        "type": "market",
        "time_in_force": "gtc",
    }
    assert order.is_filled
    assert order.filled_avg_price == 2000.1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,exc",
    [(403, BrokerRejectedError), (422, BrokerRejectedError), (500, BrokerTransportError), (503, BrokerTransportError)],
)
async def test_alpaca_error_mapping(status, exc):
    gw = _alpaca(lambda request: httpx.Response(status, json={"message": "nope"}))
    with pytest.raises(exc):
        await gw.get_positions()
    await gw.aclose()


@pytest.mark.asyncio
async def test_alpaca_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gw = _alpaca(handler)
    with pytest.raises(BrokerTransportError, match="ConnectError"):
        await gw.get_account()
    await gw.aclose()


def test_rejected_error_keeps_status_code():
    err = BrokerRejectedError("forbidden", status_code=403)
    assert err.status_code == 403
    assert str(err) == "forbidden"


def test_parse_order_handles_missing_optionals():
    order = parse_order({"id": "x", "symbol": "BTCUSD", "side": "sell", "qty": "1", "status": "new"})
    assert order.filled_qty == 0.0
    assert order.filled_avg_price is None
    assert not order.is_filled
