from __future__ import annotations

from typing import Any, Optional, Sequence

from tradebot.indicators import mean_std
from tradebot.schemas import AccountInfo, PerformanceMetrics, Position, utcnow


def compute_metrics(
    positions: Sequence[Position],
    account: Optional[AccountInfo],
    total_trades: int,
    previous: Optional[PerformanceMetrics] = None,
) -> dict[str, Any]:
    """
    Performance snapshot derived from open positions and the latest account
    figures. Without a fresh account snapshot the previous portfolio value and
    buying power are carried over. The baseline is fixed by the first snapshot.
    """
    if account is not None:
        portfolio_value = float(account.portfolio_value)
        buying_power = float(account.buying_power)
    elif previous is not None:
        portfolio_value = previous.portfolio_value
        buying_power = previous.buying_power
    else:
        portfolio_value = sum(p.market_value for p in positions)
        buying_power = 0.0

    baseline = previous.baseline_value if previous is not None and previous.baseline_value else portfolio_value
    change = portfolio_value - baseline

    winners = sum(1 for p in positions if p.unrealized_pl > 0)
    losers = sum(1 for p in positions if p.unrealized_pl < 0)

    sharpe = 0.0
    if len(positions) >= 2:
        mean, std = mean_std([p.unrealized_pl_perc for p in positions])
        if std > 0:
            sharpe = mean / std

    now = utcnow()
    holding_hours = [(now - p.opened_at).total_seconds() / 3600.0 for p in positions]

    return {
        "portfolio_value": portfolio_value,
        "buying_power": buying_power,
        "baseline_value": baseline,
        "portfolio_change": change,
        "portfolio_change_perc": change / baseline * 100.0 if baseline else 0.0,
        "sharpe_ratio": sharpe,
        "win_loss_ratio": winners / losers if losers else float(winners),
        "total_trades": int(total_trades),
        "profitable_trades": winners,
        "profitable_trades_perc": winners / len(positions) * 100.0 if positions else 0.0,
        "avg_holding_time": sum(holding_hours) / len(holding_hours) if holding_hours else 0.0,
    }
