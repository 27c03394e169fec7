from __future__ import annotations

import math
from typing import Optional, Sequence


def mean_std(values: Sequence[float]) -> tuple[float, float]:
    """Population mean and standard deviation."""
    n = len(values)
    if n == 0:
        return 0.0, 0.0
    mean = sum(values) / n
    var = sum((v - mean) ** 2 for v in values) / n
    return mean, math.sqrt(var)


def ema_series(values: Sequence[float], period: int) -> list[float]:
    """
    EMA seeded with the SMA of the first ``period`` values. The result has
    ``len(values) - period + 1`` points (empty if there is not enough data).
    """
    if period <= 0 or len(values) < period:
        return []
    k = 2.0 / (period + 1)
    out = [sum(values[:period]) / period]
    for v in values[period:]:
        out.append((v - out[-1]) * k + out[-1])
    return out


def rsi(values: Sequence[float], period: int = 14) -> Optional[float]:
    """
    Wilder's RSI over a price series. Returns None until ``period`` deltas
    are available.
    """
    if period <= 0 or len(values) <= period:
        return None

    gains = 0.0
    losses = 0.0
    for prev, cur in zip(values[:period], values[1 : period + 1]):
        change = cur - prev
        gains += max(change, 0.0)
        losses += max(-change, 0.0)
    avg_gain = gains / period
    avg_loss = losses / period

    # Wilder smoothing
    for prev, cur in zip(values[period:], values[period + 1 :]):
        change = cur - prev
        avg_gain = (avg_gain * (period - 1) + max(change, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-change, 0.0)) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - (100.0 / (1.0 + rs)))


def pct_returns(values: Sequence[float]) -> list[float]:
    return [(cur - prev) / prev for prev, cur in zip(values, values[1:]) if prev]
