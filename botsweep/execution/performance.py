"""
performance.py — Run performance from a trade list
==================================================
Pure functions, no I/O, no exceptions on empty input.

  calculate_performance(trades, initial_balance, final_balance, open_position=None)
      → PerformanceResult

  profit        final_balance − initial_balance. The balance the engine
                reports is the truth; the trade list never alters it.
  equity curve  starts at final_balance and accumulates each trade's
                realized_pnl in exit order. Used only for max drawdown.
  returns       realized_pnl / |entry_size × entry_price| per trade
                (denominator 0 → 1). Marked open_at_end trades and an open
                position snapshot are included here.
  sharpe        mean(returns) / pstdev(returns); 0 when undefined.
  counts        num_trades, wins, losses and win_rate use CLOSED trades
                only. Mark-to-market exposure is not a closed bet.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..models import MarketHistory, PerformanceResult, Position, Trade


def max_drawdown(equity: Iterable[float]) -> float:
    """Largest peak-to-trough fractional decline. [1000, 1100, 900, 950] → 0.1818…"""
    peak = None
    worst = 0.0
    for value in equity:
        if peak is None or value > peak:
            peak = value
        if peak and peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


def _trade_return(pnl: float, size: float, price: float) -> float:
    denom = abs(size * price)
    return pnl / (denom if denom else 1.0)


def sharpe_ratio(returns: Sequence[float]) -> float:
    if len(returns) == 0:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    std = float(arr.std())   # ddof=0, population
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(arr.mean() / std)


def calculate_performance(
    trades: Sequence[Trade],
    initial_balance: float,
    final_balance: float,
    open_position: Optional[Any] = None,
) -> PerformanceResult:
    ordered = sorted(trades, key=lambda t: (t.exit_timestamp, t.entry_timestamp))
    closed  = [t for t in ordered if not t.is_marked]
    marked  = [t for t in ordered if t.is_marked]

    returns: List[float] = [
        _trade_return(t.realized_pnl, t.entry_size, t.entry_price) for t in ordered
    ]

    equity = [float(final_balance)]
    for t in ordered:
        equity.append(equity[-1] + t.realized_pnl)

    unrealized = sum(t.realized_pnl for t in marked)
    pos = Position.coerce(open_position) if open_position is not None else None
    if pos is not None and not pos.is_flat:
        unrealized += pos.unrealized_pnl
        returns.append(_trade_return(pos.unrealized_pnl, pos.size, pos.entry_price))
        equity.append(equity[-1] + pos.unrealized_pnl)

    wins   = [t for t in closed if t.realized_pnl > 0]
    losses = [t for t in closed if t.realized_pnl <= 0]
    gross_win  = sum(t.realized_pnl for t in wins)
    gross_loss = sum(t.realized_pnl for t in losses)

    return PerformanceResult(
        profit=float(final_balance) - float(initial_balance),
        num_trades=len(closed),
        wins=len(wins),
        losses=len(losses),
        win_rate=len(wins) / len(closed) if closed else 0.0,
        sharpe_ratio=sharpe_ratio(returns),
        max_drawdown=max_drawdown(equity),
        profit_factor=gross_win / max(abs(gross_loss), 1),
        avg_trade_duration=(
            float(np.mean([t.duration for t in closed])) if closed else 0.0
        ),
        unrealized_pnl=unrealized,
    )


def market_history(candles: pd.DataFrame) -> MarketHistory:
    """Price context for the run's period. Volatility = pstdev of close-to-close returns."""
    if candles is None or candles.empty:
        return MarketHistory()
    close = candles["close"].astype(float)
    rets = close.pct_change().dropna()
    vol = float(rets.std(ddof=0)) if len(rets) else 0.0
    return MarketHistory(
        start_price=float(close.iloc[0]),
        end_price=float(close.iloc[-1]),
        high_price=float(candles["high"].astype(float).max()),
        low_price=float(candles["low"].astype(float).min()),
        volatility=vol if np.isfinite(vol) else 0.0,
    )


def results_metadata(perf: PerformanceResult, history: MarketHistory) -> dict:
    return {"performance": perf.to_dict(), "marketHistory": history.to_dict()}
