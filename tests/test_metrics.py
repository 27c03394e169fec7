from datetime import timedelta

import pytest

from tradebot.metrics import compute_metrics
from tradebot.schemas import AccountInfo, PerformanceMetrics, Position, position_values, utcnow


def _pos(symbol, qty, entry, price, hours=0.0):
    return Position(
        id=1,
        user_id=1,
        symbol=symbol,
        opened_at=utcnow() - timedelta(hours=hours),
        **position_values(qty, entry, price),
    )


def _account(value, buying_power=None):
    return AccountInfo(
        id="a", cash=value, portfolio_value=value, buying_power=value if buying_power is None else buying_power, equity=value
    )


def test_position_values():
    v = position_values(2, 100, 90)
    assert v["market_value"] == 180.0
    assert v["unrealized_pl"] == -20.0
    assert v["unrealized_pl_perc"] == pytest.approx(-10.0)
    assert position_values(1, 0, 5)["unrealized_pl_perc"] == 0.0


def test_first_snapshot_sets_baseline():
    m = compute_metrics([], _account(10_000.0), total_trades=0)
    assert m["baseline_value"] == 10_000.0
    assert m["portfolio_change"] == 0.0
    assert m["win_loss_ratio"] == 0.0
    assert m["sharpe_ratio"] == 0.0


def test_change_measured_against_baseline():
    previous = PerformanceMetrics(id=1, user_id=1, portfolio_value=10_000.0, buying_power=10_000.0, baseline_value=10_000.0)
    m = compute_metrics([], _account(11_000.0, 4_000.0), total_trades=3, previous=previous)
    assert m["portfolio_change"] == pytest.approx(1_000.0)
    assert m["portfolio_change_perc"] == pytest.approx(10.0)
    assert m["buying_power"] == 4_000.0
    assert m["total_trades"] == 3


def test_without_account_previous_values_carry_over():
    previous = PerformanceMetrics(id=1, user_id=1, portfolio_value=9_000.0, buying_power=1_000.0, baseline_value=10_000.0)
    m = compute_metrics([], None, total_trades=1, previous=previous)
    assert m["portfolio_value"] == 9_000.0
    assert m["buying_power"] == 1_000.0
    assert m["portfolio_change_perc"] == pytest.approx(-10.0)


def test_position_statistics():
    positions = [
        _pos("BTCUSD", 1, 100, 110, hours=2),
        _pos("ETHUSD", 1, 100, 120, hours=4),
        _pos("SOLUSD", 1, 100, 90, hours=6),
    ]
    m = compute_metrics(positions, _account(10_000.0), total_trades=5)

    assert m["profitable_trades"] == 2
    assert m["profitable_trades_perc"] == pytest.approx(200 / 3)
    assert m["win_loss_ratio"] == 2.0
    # pl%: 10, 20, -10 -> mean 6.667, pop std 12.472
    assert m["sharpe_ratio"] == pytest.approx(0.5345, abs=1e-3)
    assert m["avg_holding_time"] == pytest.approx(4.0, abs=0.01)
