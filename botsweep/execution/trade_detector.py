"""
trade_detector.py — Trade lifecycle inferred from position snapshots
====================================================================
The simulation engine only reports where the position IS after each step.
This detector diffs consecutive snapshots and turns them into Trade records.

Per step, with prev / curr snapshots:

  flat → open        prev.size == 0, curr.size != 0
                     open a trade from curr (entry price, size) at this ts
  open → flat        prev.size != 0, curr.size == 0
                     close at this step's price; pnl = Δ realized_pnl
  open → open flip   signs differ
                     close the old leg as above, open the new leg from curr,
                     both stamped with this ts
  open → open same   nothing; entry fields are never revised

realized_pnl on a Trade is always the change in the engine's running realized
PnL between entry and exit, never recomputed from prices, so fees and
slippage match the engine's own accounting exactly.

flush() synthesizes the close of a still-open trade at end of data. Its pnl is
the realized delta so far plus the current holding (last snapshot's size and
averaged entry) marked to the final price, and it carries exit_reason='open_at_end' so the
performance calculator can keep it out of the trade-count statistics.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from ..models import (
    EXIT_CLOSED, EXIT_OPEN_AT_END, EXIT_REVERSAL, Position, Trade,
)

logger = logging.getLogger(__name__)


@dataclass
class _OpenTrade:
    seq:               int
    entry_timestamp:   int
    entry_price:       float
    entry_size:        float
    realized_baseline: float   # engine realized_pnl when the leg opened

    @property
    def side(self) -> str:
        return "LONG" if self.entry_size > 0 else "SHORT"


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


class TradeLifecycleDetector:
    """One detector per bot per run. Feed it every step in order."""

    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        self._prev: Position = Position()
        self._open: Optional[_OpenTrade] = None
        self._trades: List[Trade] = []
        self._seq = 0

    # ── Read ───────────────────────────────────────────────────────────

    @property
    def trades(self) -> List[Trade]:
        return list(self._trades)

    @property
    def open_trade(self) -> Optional[_OpenTrade]:
        return self._open

    @property
    def state(self) -> str:
        return "open" if self._open is not None else "flat"

    # ── Step ───────────────────────────────────────────────────────────

    def observe(self, timestamp: int, price: float, position: Any) -> List[Trade]:
        """Diff this step's snapshot against the last one. Returns trades closed this step."""
        curr = Position.coerce(position)
        prev = self._prev
        closed: List[Trade] = []

        prev_sign, curr_sign = _sign(prev.size), _sign(curr.size)

        if prev_sign == 0 and curr_sign != 0:
            self._open_leg(timestamp, curr, baseline=prev.realized_pnl)

        elif prev_sign != 0 and curr_sign == 0:
            closed.append(self._close_leg(timestamp, price, prev, curr, EXIT_CLOSED))

        elif prev_sign != 0 and curr_sign != 0 and prev_sign != curr_sign:
            closed.append(self._close_leg(timestamp, price, prev, curr, EXIT_REVERSAL))
            # The reversal fill's realized PnL belongs to the old leg.
            self._open_leg(timestamp, curr, baseline=curr.realized_pnl)

        self._prev = curr
        return closed

    def flush(self, timestamp: int, price: float, position: Any = None) -> Optional[Trade]:
        """Close whatever is still open at the final candle, marked to price."""
        if self._open is None:
            return None
        last = Position.coerce(position) if position is not None else self._prev
        leg = self._open
        realized_delta = last.realized_pnl - leg.realized_baseline
        # Mark what is held now. Partial closes are already in realized_delta.
        marked = (price - last.entry_price) * last.size
        trade = Trade(
            id=self._trade_id(leg.seq),
            side=leg.side,
            entry_timestamp=leg.entry_timestamp,
            entry_price=leg.entry_price,
            entry_size=leg.entry_size,
            exit_timestamp=int(timestamp),
            exit_price=float(price),
            exit_size=last.size,
            realized_pnl=realized_delta + marked,
            exit_reason=EXIT_OPEN_AT_END,
        )
        self._trades.append(trade)
        self._open = None
        logger.debug(f"{self.bot_id}: flushed open {trade.side} at {price} (marked pnl {trade.realized_pnl:+.4f})")
        return trade

    # ── Internals ──────────────────────────────────────────────────────

    def _open_leg(self, timestamp: int, curr: Position, baseline: float) -> None:
        self._seq += 1
        self._open = _OpenTrade(
            seq=self._seq,
            entry_timestamp=int(timestamp),
            entry_price=curr.entry_price,
            entry_size=curr.size,
            realized_baseline=baseline,
        )

    def _close_leg(
        self,
        timestamp: int,
        price: float,
        prev: Position,
        curr: Position,
        reason: str,
    ) -> Trade:
        # prev starts flat, so a non-flat prev always has an open leg.
        leg = self._open
        trade = Trade(
            id=self._trade_id(leg.seq),
            side=leg.side,
            entry_timestamp=leg.entry_timestamp,
            entry_price=leg.entry_price,
            entry_size=leg.entry_size,
            exit_timestamp=int(timestamp),
            exit_price=float(price),
            exit_size=prev.size,
            realized_pnl=curr.realized_pnl - leg.realized_baseline,
            exit_reason=reason,
        )
        self._trades.append(trade)
        self._open = None
        return trade

    def _trade_id(self, seq: int) -> str:
        return f"{self.bot_id}-{seq}"
