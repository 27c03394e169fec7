import pytest

from fakes import FakeClock, FakeConnection, FixedStrategy, make_config, make_engine
from tradebot.strategies.registry import STRATEGIES


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def engine(clock):
    return make_engine(make_config(), clock=clock)


@pytest.fixture
def fixed_strategy(monkeypatch):
    """Registers a FixedStrategy under the "fixed" key; tune it per test."""
    strategy = FixedStrategy()
    monkeypatch.setitem(STRATEGIES, FixedStrategy.key, lambda: strategy)
    return strategy
