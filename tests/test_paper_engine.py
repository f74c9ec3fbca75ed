"""
tests/test_paper_engine.py
==========================
Paper engine accounting:
  1. Market orders fill at the given price with the taker fee charged into
     realized PnL.
  2. Limit orders rest until the price touches them, fill at the limit with
     the maker fee, and only the requested side is checked.
  3. Netting: same-side adds average the entry; a reversal through zero
     realizes the closed part and reopens at the fill price.
  4. Quote balance = initial + realized; the fill stream drains once.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from botsweep.market.paper_engine import PaperEngine


def _make_engine(taker=0.0, maker=0.0):
    return PaperEngine(initial_balance=1_000.0, taker_fee_rate=taker, maker_fee_rate=maker)


class TestMarketOrders:

    def test_open_and_close_long(self):
        e = _make_engine()
        e.place_market_order("b", "buy", 2, 100.0)
        pos = e.get_position("b")
        assert pos.size == 2
        assert pos.entry_price == 100.0
        e.place_market_order("b", "sell", 2, 110.0)
        pos = e.get_position("b")
        assert pos.size == 0
        assert pos.realized_pnl == pytest.approx(20.0)
        assert e.get_quote_balance("b") == pytest.approx(1_020.0)

    def test_taker_fee_in_realized(self):
        e = _make_engine(taker=0.001)
        e.place_market_order("b", "buy", 1, 100.0)
        assert e.get_position("b").realized_pnl == pytest.approx(-0.1)
        assert e.fees_paid("b") == pytest.approx(0.1)

    def test_short_profit(self):
        e = _make_engine()
        e.place_market_order("b", "sell", 3, 100.0)
        e.place_market_order("b", "buy", 3, 90.0)
        assert e.get_position("b").realized_pnl == pytest.approx(30.0)

    def test_uses_last_price_when_none_given(self):
        e = _make_engine()
        e.update(5, 123.0)
        fill = e.place_market_order("b", "buy", 1)
        assert fill.price == 123.0
        assert fill.timestamp == 5

    def test_bad_side(self):
        with pytest.raises(ValueError):
            _make_engine().place_market_order("b", "long", 1, 100.0)


class TestNetting:

    def test_same_side_averages_entry(self):
        e = _make_engine()
        e.place_market_order("b", "buy", 1, 100.0)
        e.place_market_order("b", "buy", 1, 110.0)
        assert e.get_position("b").entry_price == pytest.approx(105.0)

    def test_partial_close_keeps_entry(self):
        e = _make_engine()
        e.place_market_order("b", "buy", 4, 100.0)
        e.place_market_order("b", "sell", 1, 120.0)
        pos = e.get_position("b")
        assert pos.size == 3
        assert pos.entry_price == 100.0
        assert pos.realized_pnl == pytest.approx(20.0)

    def test_reversal_through_zero(self):
        e = _make_engine()
        e.place_market_order("b", "buy", 5, 100.0)
        e.place_market_order("b", "sell", 8, 90.0)
        pos = e.get_position("b")
        assert pos.size == -3
        assert pos.entry_price == 90.0
        assert pos.realized_pnl == pytest.approx(-50.0)

    def test_unrealized_marks_to_last_price(self):
        e = _make_engine()
        e.place_market_order("b", "sell", 2, 100.0)
        e.update(1, 95.0)
        assert e.get_position("b").unrealized_pnl == pytest.approx(10.0)

    def test_bots_are_isolated(self):
        e = _make_engine()
        e.place_market_order("a", "buy", 1, 100.0)
        assert e.get_position("b").size == 0
        assert e.get_quote_balance("b") == 1_000.0


class TestLimitOrders:

    def test_buy_limit_fills_when_low_touches(self):
        e = _make_engine(maker=0.001)
        e.place_limit_order("b", "buy", 1, 95.0)
        assert e.check_limit_order_fills_against_price(96.0, 1, "buy") == []
        fills = e.check_limit_order_fills_against_price(94.0, 2, "buy")
        assert len(fills) == 1
        assert fills[0].price == 95.0
        assert fills[0].liquidity == "maker"
        assert e.get_position("b").size == 1
        assert e.get_position("b").realized_pnl == pytest.approx(-0.095)
        assert e.open_orders() == []

    def test_only_requested_side_checked(self):
        e = _make_engine()
        e.place_limit_order("b", "sell", 1, 105.0)
        assert e.check_limit_order_fills_against_price(110.0, 1, "buy") == []
        assert len(e.check_limit_order_fills_against_price(110.0, 1, "sell")) == 1

    def test_cancel(self):
        e = _make_engine()
        oid = e.place_limit_order("b", "buy", 1, 95.0)
        assert e.cancel_order(oid) is True
        assert e.check_limit_order_fills_against_price(50.0, 1, "buy") == []

    def test_fill_stream_drains_once(self):
        e = _make_engine()
        e.place_market_order("b", "buy", 1, 100.0)
        e.place_limit_order("b", "sell", 1, 101.0)
        e.check_limit_order_fills_against_price(102.0, 1, "sell")
        fills = e.drain_fill_events()
        assert [f.side for f in fills] == ["buy", "sell"]
        assert e.drain_fill_events() == []
