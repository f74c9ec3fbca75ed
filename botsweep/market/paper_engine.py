"""
Paper engine — a minimal netting simulator for backtest sweeps.

One signed position per bot:
  size > 0 long, size < 0 short, 0 flat.
  Adding on the same side averages the entry price.
  An opposite fill reduces the position, realizes PnL on the closed part,
  and if it crosses zero the remainder opens the other side at the fill price.

Fees are charged into realized PnL on every fill (taker for market orders,
maker for resting limits), so the realized field the trade detector diffs
already includes them.

Per-step contract used by the orchestrator:
    engine.update(timestamp, price)
    engine.check_limit_order_fills_against_price(low,  ts, "buy")
    engine.check_limit_order_fills_against_price(high, ts, "sell")
    evaluator.evaluate_signals_and_trade(ts, close, pattern_result)
    engine.get_position(bot_id) / engine.get_quote_balance(bot_id)
    engine.drain_fill_events()
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .. import sweep_config as cfg
from ..models import Position

logger = logging.getLogger(__name__)

_EPS = 1e-12


@dataclass
class LimitOrder:
    order_id: str
    bot_id: str
    side: str              # 'buy' or 'sell'
    size: float            # unsigned, base units
    limit_price: float
    placed_at: Optional[int] = None


@dataclass
class FillEvent:
    order_id: str
    bot_id: str
    side: str
    size: float
    price: float
    fee: float
    timestamp: Optional[int]
    liquidity: str         # 'taker' or 'maker'

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "botId": self.bot_id,
            "side": self.side,
            "size": self.size,
            "price": self.price,
            "fee": self.fee,
            "timestamp": self.timestamp,
            "liquidity": self.liquidity,
        }


@dataclass
class _Account:
    size: float = 0.0
    entry_price: float = 0.0
    realized_pnl: float = 0.0
    fees_paid: float = 0.0


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


class PaperEngine:

    def __init__(
        self,
        initial_balance: Optional[float] = None,
        taker_fee_rate: Optional[float] = None,
        maker_fee_rate: Optional[float] = None,
    ):
        self.initial_balance = initial_balance if initial_balance is not None else cfg.INITIAL_BALANCE
        self.taker_fee_rate = taker_fee_rate if taker_fee_rate is not None else cfg.TAKER_FEE_RATE
        self.maker_fee_rate = maker_fee_rate if maker_fee_rate is not None else cfg.MAKER_FEE_RATE
        self.last_price: Optional[float] = None
        self.last_timestamp: Optional[int] = None
        self._accounts: Dict[str, _Account] = {}
        self._orders: Dict[str, LimitOrder] = {}
        self._fills: List[FillEvent] = []
        self._ids = itertools.count(1)

    # ── Clock ──────────────────────────────────────────────────────────

    def update(self, timestamp: Optional[int] = None, price: Optional[float] = None) -> None:
        """Advance the engine clock and mark price."""
        if timestamp is not None:
            self.last_timestamp = int(timestamp)
        if price is not None:
            self.last_price = float(price)

    # ── Orders ─────────────────────────────────────────────────────────

    def place_market_order(self, bot_id: str, side: str, size: float, price: Optional[float] = None,
                           timestamp: Optional[int] = None) -> FillEvent:
        side = self._check_side(side)
        px = float(price) if price is not None else self.last_price
        if px is None:
            raise ValueError("market order needs a price before the first update()")
        order_id = f"mkt-{next(self._ids)}"
        return self._fill(order_id, bot_id, side, float(size), px,
                          timestamp if timestamp is not None else self.last_timestamp,
                          self.taker_fee_rate, "taker")

    def place_limit_order(self, bot_id: str, side: str, size: float, limit_price: float,
                          timestamp: Optional[int] = None) -> str:
        side = self._check_side(side)
        if size <= 0:
            raise ValueError(f"order size must be positive, got {size}")
        order_id = f"lmt-{next(self._ids)}"
        self._orders[order_id] = LimitOrder(order_id, bot_id, side, float(size), float(limit_price),
                                            timestamp if timestamp is not None else self.last_timestamp)
        return order_id

    def cancel_order(self, order_id: str) -> bool:
        return self._orders.pop(order_id, None) is not None

    def cancel_all(self, bot_id: str) -> int:
        doomed = [oid for oid, o in self._orders.items() if o.bot_id == bot_id]
        for oid in doomed:
            del self._orders[oid]
        return len(doomed)

    def open_orders(self, bot_id: Optional[str] = None) -> List[LimitOrder]:
        return [o for o in self._orders.values() if bot_id is None or o.bot_id == bot_id]

    def check_limit_order_fills_against_price(self, price: float, timestamp: Optional[int],
                                              side: str) -> List[FillEvent]:
        """
        Fill resting orders of one side that the price touched.
        buy  limits fill when price <= limit
        sell limits fill when price >= limit
        Fills happen at the limit price, oldest order first.
        """
        side = self._check_side(side)
        fills = []
        for oid in list(self._orders):
            order = self._orders[oid]
            if order.side != side:
                continue
            touched = price <= order.limit_price if side == "buy" else price >= order.limit_price
            if touched:
                del self._orders[oid]
                fills.append(self._fill(oid, order.bot_id, side, order.size, order.limit_price,
                                        timestamp, self.maker_fee_rate, "maker"))
        return fills

    # ── Account ────────────────────────────────────────────────────────

    def get_position(self, bot_id: str) -> Position:
        acct = self._accounts.get(bot_id) or _Account()
        unrealized = 0.0
        if acct.size and self.last_price is not None:
            unrealized = (self.last_price - acct.entry_price) * acct.size
        return Position(
            size=acct.size,
            entry_price=acct.entry_price,
            realized_pnl=acct.realized_pnl,
            unrealized_pnl=unrealized,
        )

    def get_quote_balance(self, bot_id: str) -> float:
        acct = self._accounts.get(bot_id) or _Account()
        return self.initial_balance + acct.realized_pnl

    def fees_paid(self, bot_id: str) -> float:
        acct = self._accounts.get(bot_id) or _Account()
        return acct.fees_paid

    def drain_fill_events(self) -> List[FillEvent]:
        fills, self._fills = self._fills, []
        return fills

    # ── Internals ──────────────────────────────────────────────────────

    @staticmethod
    def _check_side(side: str) -> str:
        s = str(side).lower()
        if s not in ("buy", "sell"):
            raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
        return s

    def _fill(self, order_id: str, bot_id: str, side: str, size: float, price: float,
              timestamp: Optional[int], fee_rate: float, liquidity: str) -> FillEvent:
        acct = self._accounts.setdefault(bot_id, _Account())
        qty = size if side == "buy" else -size
        fee = abs(qty) * price * fee_rate

        if acct.size == 0 or _sign(acct.size) == _sign(qty):
            new_size = acct.size + qty
            acct.entry_price = (acct.entry_price * abs(acct.size) + price * abs(qty)) / abs(new_size)
            acct.size = new_size
        else:
            closing = min(abs(qty), abs(acct.size))
            acct.realized_pnl += (price - acct.entry_price) * closing * _sign(acct.size)
            new_size = acct.size + qty
            if abs(new_size) < _EPS:
                acct.size, acct.entry_price = 0.0, 0.0
            elif _sign(new_size) != _sign(acct.size):
                acct.size, acct.entry_price = new_size, price
            else:
                acct.size = new_size

        acct.realized_pnl -= fee
        acct.fees_paid += fee

        event = FillEvent(order_id, bot_id, side, size, price, fee, timestamp, liquidity)
        self._fills.append(event)
        logger.debug(f"fill {bot_id} {side} {size}@{price} ({liquidity}, fee {fee:.6f}) → size {acct.size}")
        return event
