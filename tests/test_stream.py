import json

import pytest

from fakes import FakeConnection, make_config, make_engine
from tradebot.config import AlpacaStreamConfig
from tradebot.providers.stream import MarketDataStream


class FakeSocket:
    """Async-iterable stand-in for a websockets client connection."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame


class Dialer:
    """Hands out the queued sockets in order; an exception entry fails that attempt."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if not self.outcomes:
            raise OSError("connection refused")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _trade(pair, price):
    return {"T": "t", "S": pair, "p": price, "t": "2024-01-01T00:00:00Z"}


@pytest.mark.asyncio
async def test_stream_subscribes_and_forwards_ticks(monkeypatch):
    monkeypatch.setenv("APCA_API_KEY_ID", "PK")
    monkeypatch.setenv("APCA_API_SECRET_KEY", "SK")
    socket = FakeSocket(
        [
            json.dumps([{"T": "success", "msg": "connected"}]),
            json.dumps([_trade("BTC/USD", 26000.5), {"T": "b", "S": "ETH/USD", "c": 1650.0}]),
            "not json",
            json.dumps({"T": "error", "code": 402, "msg": "auth failed"}),
        ]
    )
    received = []

    async def on_tick(t):
        received.append((t.symbol, t.price))

    cfg = AlpacaStreamConfig(max_reconnect_attempts=1)
    stream = MarketDataStream(cfg, ["BTCUSD", "ETHUSD"], on_tick, connect=Dialer(socket), sleep=Sleeps())
    await stream.run()

    assert received == [("BTCUSD", 26000.5), ("ETHUSD", 1650.0)]
    assert socket.sent == [
        {"action": "auth", "key": "PK", "secret": "SK"},
        {"action": "subscribe", "trades": ["BTC/USD", "ETH/USD"], "bars": ["BTC/USD", "ETH/USD"]},
    ]
    assert not stream.connected


@pytest.mark.asyncio
async def test_stream_without_credentials_only_subscribes(monkeypatch):
    monkeypatch.delenv("APCA_API_KEY_ID", raising=False)
    monkeypatch.delenv("APCA_API_SECRET_KEY", raising=False)
    socket = FakeSocket([])

    async def on_tick(t):
        pass

    cfg = AlpacaStreamConfig(channels=["trades"], max_reconnect_attempts=1)
    stream = MarketDataStream(cfg, ["SOLUSD"], on_tick, connect=Dialer(socket), sleep=Sleeps())
    await stream.run()

    assert socket.sent == [{"action": "subscribe", "trades": ["SOL/USD"]}]


@pytest.mark.asyncio
async def test_stream_backs_off_and_resets_after_connecting():
    sleeps = Sleeps()
    dialer = Dialer(OSError("refused"), FakeSocket([]))

    async def on_tick(t):
        pass

    cfg = AlpacaStreamConfig(
        reconnect_base_delay=1.0, reconnect_multiplier=2.0, reconnect_max_delay=30.0, max_reconnect_attempts=3
    )
    stream = MarketDataStream(cfg, ["BTCUSD"], on_tick, connect=dialer, sleep=sleeps)
    await stream.run()

    # refused, connected then closed, refused, refused (gives up)
    assert len(dialer.calls) == 4
    assert sleeps.delays == [1.0, 1.0, 2.0]
    assert stream.reconnects == 4
    assert dialer.calls[0] == (cfg.url, {"ping_interval": cfg.ping_interval})


@pytest.mark.asyncio
async def test_failing_tick_handler_does_not_end_the_stream():
    socket = FakeSocket([json.dumps([_trade("BTC/USD", 1.0), _trade("BTC/USD", 2.0)])])
    seen = []

    async def on_tick(t):
        seen.append(t.price)
        if t.price == 1.0:
            raise RuntimeError("handler down")

    cfg = AlpacaStreamConfig(max_reconnect_attempts=1)
    await MarketDataStream(cfg, ["BTCUSD"], on_tick, connect=Dialer(socket), sleep=Sleeps()).run()

    assert seen == [1.0, 2.0]


@pytest.mark.asyncio
async def test_stream_ticks_reach_dashboards_through_the_engine():
    engine = make_engine(make_config())
    conn = FakeConnection()
    engine.hub.register(1, conn)
    socket = FakeSocket([json.dumps([_trade("BTC/USD", 26000.0)])])
    stream = MarketDataStream(
        AlpacaStreamConfig(max_reconnect_attempts=1),
        engine.cfg.app.symbols,
        engine.dispatch_tick,
        connect=Dialer(socket),
        sleep=Sleeps(),
    )

    await stream.run()

    assert conn.types() == ["marketData"]
    assert conn.sent[0]["data"]["price"] == 26000.0
    assert engine.cache.price("BTCUSD") == 26000.0


def test_engine_builds_stream_only_when_enabled():
    assert make_engine(make_config()).stream is None
    engine = make_engine(make_config(market_data={"stream": {"enabled": True}}))
    assert isinstance(engine.stream, MarketDataStream)
    assert engine.stream.symbols == ["BTCUSD", "ETHUSD"]
    assert not engine.stream.is_running()
