"""
tests/test_performance.py
=========================
Performance calculator invariants:
  1. profit = final − initial regardless of the trade list.
  2. Counts and win rate use closed trades only; marked (open_at_end)
     trades and open positions feed the return series but not the counts.
  3. Max drawdown is peak-to-trough on the running equity curve.
  4. Empty input → neutral result, no exceptions.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from botsweep.execution.performance import (
    calculate_performance, market_history, max_drawdown, results_metadata, sharpe_ratio,
)
from botsweep.market.candles import candles_from_rows
from botsweep.models import EXIT_OPEN_AT_END, Position, Trade


def _make_trade(pnl, n=1, size=1.0, price=1000.0, reason="closed", entry_ts=None, exit_ts=None):
    entry_ts = n * 10 if entry_ts is None else entry_ts
    exit_ts = entry_ts + 5 if exit_ts is None else exit_ts
    return Trade(f"t{n}", "LONG" if size > 0 else "SHORT", entry_ts, price, size,
                 exit_ts, price, size, pnl, reason)


# ─────────────────────────────────────────────────────────────────────────────
# 1. Round numbers
# ─────────────────────────────────────────────────────────────────────────────

class TestRoundNumbers:

    def test_two_trades(self):
        r = calculate_performance([_make_trade(100, 1), _make_trade(-50, 2)], 1000, 1050)
        assert r.profit == 50
        assert r.win_rate == 0.5
        assert r.num_trades == 2
        assert r.wins == 1
        assert r.losses == 1

    def test_sharpe_population_std(self):
        # returns 0.1 and −0.05 → mean 0.025, pstdev 0.075
        r = calculate_performance([_make_trade(100, 1), _make_trade(-50, 2)], 1000, 1050)
        assert r.sharpe_ratio == pytest.approx(1 / 3)

    def test_profit_factor(self):
        r = calculate_performance([_make_trade(100, 1), _make_trade(-50, 2)], 1000, 1050)
        assert r.profit_factor == pytest.approx(2.0)

    def test_avg_duration(self):
        r = calculate_performance(
            [_make_trade(1, 1, entry_ts=0, exit_ts=10), _make_trade(1, 2, entry_ts=10, exit_ts=40)],
            1000, 1002,
        )
        assert r.avg_trade_duration == 20.0

    def test_profit_uses_reported_balance(self):
        # Trade sum (+100) disagrees with the balance delta (+80, fees); the balance wins.
        r = calculate_performance([_make_trade(100, 1)], 1000, 1080)
        assert r.profit == 80


# ─────────────────────────────────────────────────────────────────────────────
# 2. Mark-to-market exposure
# ─────────────────────────────────────────────────────────────────────────────

class TestMarkedExposure:

    def test_open_at_end_excluded_from_counts(self):
        trades = [_make_trade(100, 1), _make_trade(30, 2, reason=EXIT_OPEN_AT_END)]
        r = calculate_performance(trades, 1000, 1100)
        assert r.num_trades == 1
        assert r.win_rate == 1.0
        assert r.unrealized_pnl == 30
        # Both returns (0.1, 0.03) feed the Sharpe series.
        assert r.sharpe_ratio == pytest.approx(0.065 / 0.035)

    def test_open_position_feeds_returns_only(self):
        pos = Position(size=2.0, entry_price=500.0, unrealized_pnl=-100.0)
        r = calculate_performance([_make_trade(100, 1)], 1000, 1100, open_position=pos)
        assert r.num_trades == 1
        assert r.unrealized_pnl == -100.0
        # returns 0.1 and −0.1 → mean 0
        assert r.sharpe_ratio == pytest.approx(0.0)

    def test_flat_open_position_ignored(self):
        r = calculate_performance([_make_trade(100, 1)], 1000, 1100, open_position={"size": 0})
        assert r.unrealized_pnl == 0


# ─────────────────────────────────────────────────────────────────────────────
# 3. Drawdown
# ─────────────────────────────────────────────────────────────────────────────

class TestDrawdown:

    def test_monotonic_peak(self):
        assert max_drawdown([1000, 1100, 900, 950]) == pytest.approx(200 / 1100)
        assert max_drawdown([1000, 1100, 900, 950]) == pytest.approx(0.1818, abs=1e-4)

    def test_no_drawdown_when_rising(self):
        assert max_drawdown([1, 2, 3]) == 0.0

    def test_equity_curve_from_final_balance(self):
        # equity: 1000 → 1100 → 900 → 950
        trades = [_make_trade(100, 1), _make_trade(-200, 2), _make_trade(50, 3)]
        r = calculate_performance(trades, 950, 1000)
        assert r.max_drawdown == pytest.approx(200 / 1100)

    def test_trades_walked_in_exit_order(self):
        late_loss = _make_trade(-200, 1, entry_ts=0, exit_ts=50)
        early_win = _make_trade(100, 2, entry_ts=10, exit_ts=20)
        r = calculate_performance([late_loss, early_win], 1000, 1000)
        assert r.max_drawdown == pytest.approx(200 / 1100)


# ─────────────────────────────────────────────────────────────────────────────
# 4. Degenerate input
# ─────────────────────────────────────────────────────────────────────────────

class TestNeutral:

    def test_empty(self):
        r = calculate_performance([], 1000, 990)
        assert r.profit == -10
        assert r.sharpe_ratio == 0
        assert r.win_rate == 0
        assert r.num_trades == 0
        assert r.max_drawdown == 0

    def test_single_trade_zero_variance(self):
        assert calculate_performance([_make_trade(5, 1)], 1000, 1005).sharpe_ratio == 0

    def test_zero_denominator_substitutes_one(self):
        assert sharpe_ratio([]) == 0.0
        t1 = _make_trade(2.0, 1, size=0.0)
        t2 = _make_trade(4.0, 2, size=0.0)
        # returns 2 and 4 → mean 3, pstdev 1
        assert calculate_performance([t1, t2], 0, 6).sharpe_ratio == pytest.approx(3.0)


class TestMarketHistory:

    def test_from_candles(self):
        candles = candles_from_rows([
            [0, 100, 105, 95, 100, 1],
            [1, 100, 120, 99, 110, 1],
            [2, 110, 111, 90, 99, 1],
        ])
        h = market_history(candles)
        assert h.start_price == 100
        assert h.end_price == 99
        assert h.high_price == 120
        assert h.low_price == 90
        # returns +0.1 and −0.1 → pstdev 0.1
        assert h.volatility == pytest.approx(0.1)

    def test_metadata_shape(self):
        meta = results_metadata(
            calculate_performance([], 1000, 1000),
            market_history(candles_from_rows([])),
        )
        assert set(meta) == {"performance", "marketHistory"}
        assert meta["performance"]["profit"] == 0
        assert set(meta["marketHistory"]) == {"startPrice", "endPrice", "highPrice", "lowPrice", "volatility"}
