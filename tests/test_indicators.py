import pytest

from tradebot.indicators import ema_series, mean_std, pct_returns, rsi


def test_mean_std_population():
    assert mean_std([]) == (0.0, 0.0)
    mean, std = mean_std([2, 4, 4, 4, 5, 5, 7, 9])
    assert mean == 5.0
    assert std == 2.0


def test_ema_series_seeded_with_sma():
    assert ema_series([1, 2], 3) == []
    out = ema_series([1, 2, 3, 4], 3)
    assert len(out) == 2
    assert out[0] == pytest.approx(2.0)
    assert out[1] == pytest.approx(3.0)  # (4 - 2) * 0.5 + 2


def test_rsi_extremes_and_warmup():
    assert rsi([1.0] * 14, 14) is None
    assert rsi([float(i) for i in range(20)], 14) == 100.0
    assert rsi([float(20 - i) for i in range(20)], 14) == pytest.approx(0.0)
    mixed = rsi([100, 101, 100, 101, 100, 101, 100, 101, 100, 101, 100, 101, 100, 101, 100, 101], 14)
    assert 40 < mixed < 60


def test_pct_returns_skips_zero_base():
    assert pct_returns([100, 110, 99]) == pytest.approx([0.1, -0.1])
    assert pct_returns([0, 1, 2]) == pytest.approx([1.0])
