import pytest

from fakes import FakeConnection, FakeGateway, attach_gateway, make_config, tick
from tradebot.broker.base import BrokerRejectedError
from tradebot.engine import Engine
from tradebot.providers.simulated import SimulatedProvider
from tradebot.storage import MemoryStorage


async def _user(engine, conn=None, active=False, strategy="mean_reversion"):
    user = await engine.storage.create_user("alice")
    await engine.storage.save_bot_settings(user.id, is_active=active, strategy=strategy)
    if conn is not None:
        engine.hub.register(user.id, conn)
    return user.id


@pytest.mark.asyncio
async def test_tick_reprices_existing_position(engine, conn):
    uid = await _user(engine, conn)
    await engine.storage.create_position(uid, "BTCUSD", qty=1.0, entry_price=100.0, current_price=100.0)

    seen = []
    for i, price in enumerate([100.0, 105.0, 95.0]):
        await engine.pipeline.handle_tick(uid, tick("BTCUSD", price, i))
        pos = await engine.storage.get_position(uid, "BTCUSD")
        seen.append((pos.current_price, pos.unrealized_pl, pos.unrealized_pl_perc, pos.market_value))

    assert seen == [
        pytest.approx((100.0, 0.0, 0.0, 100.0)),
        pytest.approx((105.0, 5.0, 5.0, 105.0)),
        pytest.approx((95.0, -5.0, -5.0, 95.0)),
    ]
    assert conn.types() == ["marketData", "positionUpdate"] * 3
    last = conn.of_type("positionUpdate")[-1]["data"]
    assert last["unrealizedPl"] == pytest.approx(-5.0)
    assert last["unrealizedPlPerc"] == pytest.approx(-5.0)


@pytest.mark.asyncio
async def test_tick_never_creates_positions(engine, conn):
    uid = await _user(engine, conn)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert await engine.storage.get_positions(uid) == []
    assert conn.types() == ["marketData"]
    assert engine.cache.price("ETHUSD") == 2000.0


@pytest.mark.asyncio
async def test_inactive_bot_does_not_evaluate(engine, conn, fixed_strategy):
    uid = await _user(engine, conn, active=False, strategy="fixed")
    gateway = FakeGateway(fill_price=2000.0)
    await attach_gateway(engine, uid, gateway)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert fixed_strategy.calls == []
    assert gateway.submitted == []


@pytest.mark.asyncio
async def test_confident_signal_places_order_and_records_trade(engine, conn, fixed_strategy):
    uid = await _user(engine, conn, active=True, strategy="fixed")
    gateway = FakeGateway(fill_price=2000.0)
    await attach_gateway(engine, uid, gateway)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert len(gateway.submitted) == 1
    req = gateway.submitted[0]
    assert (req.symbol, req.side, req.type) == ("ETHUSD", "buy", "market")
    assert req.qty > 0

    trades = await engine.storage.get_trades(uid)
    assert [(t.symbol, t.side, t.price, t.status) for t in trades] == [("ETHUSD", "buy", 2000.0, "filled")]

    pos = await engine.storage.get_position(uid, "ETHUSD")
    assert pos.qty == pytest.approx(1.0)
    assert pos.entry_price == pytest.approx(2000.0)

    types = conn.types()
    assert types.index("strategySignal") < types.index("orderUpdate")
    assert conn.of_type("strategySignal")[0]["data"]["confidence"] == 85.0
    logs = await engine.storage.get_logs(uid)
    levels = [entry.level for entry in reversed(logs)]
    assert levels == ["SIGNAL", "TRADE"]
    assert logs[-1].message == "Fixed buy signal detected for ETHUSD (confidence: 85.0%)"

    metrics = await engine.storage.get_metrics(uid)
    assert metrics.total_trades == 1


@pytest.mark.asyncio
async def test_strategy_sees_history_before_current_tick(engine, fixed_strategy):
    uid = await _user(engine, active=True, strategy="fixed")
    fixed_strategy.action = "hold"
    for i, price in enumerate([10.0, 11.0, 12.0]):
        await engine.pipeline.handle_tick(uid, tick("SOLUSD", price, i))

    assert fixed_strategy.calls == [("SOLUSD", 1, 0), ("SOLUSD", 2, 1), ("SOLUSD", 3, 2)]


@pytest.mark.asyncio
@pytest.mark.parametrize("action,confidence", [("buy", 70.0), ("sell", 40.0), ("hold", 99.0)])
async def test_weak_or_hold_signals_place_no_order(engine, fixed_strategy, action, confidence):
    uid = await _user(engine, active=True, strategy="fixed")
    fixed_strategy.action = action
    fixed_strategy.confidence = confidence
    gateway = FakeGateway(fill_price=2000.0)
    await attach_gateway(engine, uid, gateway)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert gateway.submitted == []
    assert await engine.storage.get_trades(uid) == []


@pytest.mark.asyncio
async def test_failed_submit_logs_error_and_records_nothing(engine, conn, fixed_strategy):
    uid = await _user(engine, conn, active=True, strategy="fixed")
    gateway = FakeGateway(fail_submit=BrokerRejectedError("insufficient balance", status_code=403))
    await attach_gateway(engine, uid, gateway)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert len(gateway.submitted) == 1
    assert await engine.storage.get_trades(uid) == []
    assert await engine.storage.get_positions(uid) == []
    assert conn.of_type("orderUpdate") == []
    errors = [entry for entry in await engine.storage.get_logs(uid) if entry.level == "ERROR"]
    assert [e.message for e in errors] == ["Order execution failed: insufficient balance"]


@pytest.mark.asyncio
async def test_missing_credentials_skip_order_quietly(engine, fixed_strategy):
    uid = await _user(engine, active=True, strategy="fixed")

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert fixed_strategy.calls  # still scored
    assert await engine.storage.get_trades(uid) == []
    assert [e.level for e in await engine.storage.get_logs(uid)] == ["SIGNAL"]


@pytest.mark.asyncio
async def test_sell_fill_closes_position(engine, conn, fixed_strategy):
    uid = await _user(engine, conn, active=True, strategy="fixed")
    await engine.storage.create_position(uid, "ETHUSD", qty=1.0, entry_price=1900.0, current_price=1900.0)
    fixed_strategy.action = "sell"
    await attach_gateway(engine, uid, FakeGateway(fill_price=2000.0))

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert await engine.storage.get_positions(uid) == []
    assert conn.of_type("positionClosed")[0]["data"] == {"symbol": "ETHUSD"}


@pytest.mark.asyncio
async def test_risk_sized_strategy_uses_account_value(engine, fixed_strategy):
    uid = await _user(engine, active=True, strategy="fixed")
    fixed_strategy.sizing = "risk"
    fixed_strategy.confidence = 80.0
    gateway = FakeGateway(account_value=10_000.0, fill_price=2000.0)
    await attach_gateway(engine, uid, gateway)

    await engine.pipeline.handle_tick(uid, tick("ETHUSD", 2000.0))

    assert gateway.account_calls == 1
    # 10_000 * 0.1 * 0.8 / 2000
    assert gateway.submitted[0].qty == pytest.approx(0.4)


class BrokenPositions(MemoryStorage):
    async def get_position(self, user_id, symbol):
        raise RuntimeError("db down")


@pytest.mark.asyncio
async def test_failing_step_stops_handler_without_raising(fixed_strategy):
    cfg = make_config()
    engine = Engine(cfg, SimulatedProvider(cfg.market_data.simulated), storage=BrokenPositions())
    conn = FakeConnection()
    uid = await _user(engine, conn, active=True, strategy="fixed")

    await engine.pipeline.handle_tick(uid, tick("BTCUSD", 100.0))

    assert conn.types() == ["marketData"]
    assert fixed_strategy.calls == []


@pytest.mark.asyncio
async def test_dispatch_fans_out_without_duplicating_history(engine):
    a = FakeConnection()
    b = FakeConnection()
    engine.hub.register(1, a)
    engine.hub.register(2, b)

    await engine.dispatch_tick(tick("BTCUSD", 100.0))

    assert a.types() == ["marketData"]
    assert b.types() == ["marketData"]
    assert len(engine.cache.history("BTCUSD")) == 1


class LockedLogs(MemoryStorage):
    """Log writes fail for user 1 only."""

    async def create_log(self, user_id, level, message):
        if user_id == 1:
            raise RuntimeError("log table locked")
        return await super().create_log(user_id, level, message)


@pytest.mark.asyncio
async def test_failing_log_write_does_not_escape_the_handler(fixed_strategy):
    cfg = make_config()
    engine = Engine(cfg, SimulatedProvider(cfg.market_data.simulated), storage=LockedLogs())
    first, second = FakeConnection(), FakeConnection()
    uid = await _user(engine, first, active=True, strategy="fixed")
    assert uid == 1
    engine.hub.register(2, second)

    await engine.pipeline.handle_tick(uid, tick("BTCUSD", 100.0))
    await engine.dispatch_tick(tick("BTCUSD", 101.0, 1))

    assert len(fixed_strategy.calls) == 2
    assert first.types() == ["marketData", "marketData"]
    assert second.types() == ["marketData"]


@pytest.mark.asyncio
async def test_dispatch_continues_past_a_failing_user(engine, monkeypatch):
    a, b = FakeConnection(), FakeConnection()
    engine.hub.register(1, a)
    engine.hub.register(2, b)
    original = engine.pipeline.handle_tick

    async def handle(user_id, t):
        if user_id == 1:
            raise RuntimeError("boom")
        await original(user_id, t)

    monkeypatch.setattr(engine.pipeline, "handle_tick", handle)

    await engine.dispatch_tick(tick("BTCUSD", 100.0))

    assert a.sent == []
    assert b.types() == ["marketData"]
