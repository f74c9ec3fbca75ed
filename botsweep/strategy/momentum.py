"""
Momentum sweep strategy — EMA crossover with an RSI filter

Entry logic:
  - Fast EMA crosses above slow EMA and RSI below rsiUpper → go long
  - Fast EMA crosses below slow EMA and RSI above rsiLower → go short
  - An opposite signal while in a position reverses it in one order

Exit logic:
  - Stop loss / take profit as fractions of entry price (riskManagement)
  - trailingStop: the stop follows the best price seen since entry

Sizing: positionSizing.value × quote balance / price.

Indicators are computed once per run by precompute_patterns(); the evaluator
only reads the row for the current candle.
"""

import logging
import math
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..market.paper_engine import PaperEngine

logger = logging.getLogger(__name__)


def _rsi(closes: pd.Series, period: int) -> pd.Series:
    delta = closes.diff()
    gain = delta.clip(lower=0)
    loss = -delta.clip(upper=0)
    avg_gain = gain.ewm(alpha=1/period, min_periods=period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1/period, min_periods=period, adjust=False).mean()
    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    return rsi.fillna(50)


def precompute_patterns(candles: pd.DataFrame, configuration: Dict[str, Any]) -> List[Dict[str, float]]:
    """One dict per candle row: ema_fast, ema_slow, rsi, cross (+1 up, -1 down, 0 none)."""
    if candles is None or candles.empty:
        return []
    params = configuration.get("strategy", {}).get("params", {})
    closes = candles["close"].astype(float)
    ema_fast = closes.ewm(span=int(params.get("emaFast", 9)), adjust=False).mean()
    ema_slow = closes.ewm(span=int(params.get("emaSlow", 26)), adjust=False).mean()
    rsi = _rsi(closes, int(params.get("rsiPeriod", 14)))

    spread = np.sign(ema_fast - ema_slow)
    cross = spread.diff().fillna(0)
    cross = np.sign(cross).astype(int)

    frame = pd.DataFrame({
        "ema_fast": ema_fast.values,
        "ema_slow": ema_slow.values,
        "rsi":      rsi.values,
        "cross":    cross.values,
    })
    # No signals until the slow EMA has seen enough data.
    warmup = int(params.get("emaSlow", 26))
    frame.loc[: warmup - 1, "cross"] = 0
    return frame.to_dict("records")


class MomentumEvaluator:

    def __init__(self, engine: PaperEngine, bot_id: str, configuration: Dict[str, Any]):
        self.engine = engine
        self.bot_id = bot_id
        params = configuration.get("strategy", {}).get("params", {})
        risk = configuration.get("riskManagement", {})
        sizing = configuration.get("positionSizing", {})

        self.rsi_upper = float(params.get("rsiUpper", 65))
        self.rsi_lower = float(params.get("rsiLower", 35))
        self.order_type = params.get("entryOrderType", "market")
        self.limit_offset = float(params.get("limitOffset", 0.001))
        self.stop_loss = float(risk.get("stopLoss", 0.02))
        self.take_profit = float(risk.get("takeProfit", 0.04))
        self.trailing = bool(risk.get("trailingStop", False))
        self.size_fraction = float(sizing.get("value", 0.25))

        self._best_price: Optional[float] = None
        self._signal_count = 0

    def evaluate_signals_and_trade(self, timestamp: int, price: float,
                                   pattern_result: Optional[Dict[str, float]]) -> str:
        """Returns the action taken: 'BUY', 'SELL', 'EXIT' or 'NONE'."""
        pos = self.engine.get_position(self.bot_id)

        if pos.size != 0 and self._exit_hit(pos.size, pos.entry_price, price):
            self.engine.cancel_all(self.bot_id)
            side = "sell" if pos.size > 0 else "buy"
            self.engine.place_market_order(self.bot_id, side, abs(pos.size), price, timestamp)
            self._best_price = None
            return "EXIT"

        if not pattern_result:
            return "NONE"
        cross = int(pattern_result.get("cross", 0) or 0)
        rsi = pattern_result.get("rsi", 50.0)
        if cross == 0 or rsi is None or (isinstance(rsi, float) and math.isnan(rsi)):
            return "NONE"

        if cross > 0 and rsi < self.rsi_upper and pos.size <= 0:
            return self._enter("buy", pos.size, price, timestamp)
        if cross < 0 and rsi > self.rsi_lower and pos.size >= 0:
            return self._enter("sell", pos.size, price, timestamp)
        return "NONE"

    # ── Internals ──────────────────────────────────────────────────────

    def _exit_hit(self, size: float, entry: float, price: float) -> bool:
        if entry <= 0:
            return False
        if size > 0:
            self._best_price = max(self._best_price or entry, price)
            anchor = self._best_price if self.trailing else entry
            return price <= anchor * (1 - self.stop_loss) or price >= entry * (1 + self.take_profit)
        self._best_price = min(self._best_price or entry, price)
        anchor = self._best_price if self.trailing else entry
        return price >= anchor * (1 + self.stop_loss) or price <= entry * (1 - self.take_profit)

    def _enter(self, side: str, current_size: float, price: float, timestamp: int) -> str:
        balance = self.engine.get_quote_balance(self.bot_id)
        if balance <= 0 or price <= 0:
            return "NONE"
        qty = balance * self.size_fraction / price + abs(current_size)
        self.engine.cancel_all(self.bot_id)
        self._best_price = None
        self._signal_count += 1
        if self.order_type == "limit":
            offset = -self.limit_offset if side == "buy" else self.limit_offset
            self.engine.place_limit_order(self.bot_id, side, qty, price * (1 + offset), timestamp)
        else:
            self.engine.place_market_order(self.bot_id, side, qty, price, timestamp)
        return side.upper()


class MomentumBotFactory:
    """Builds the per-run engine/evaluator pair the orchestrator drives."""

    def __init__(self, taker_fee_rate: Optional[float] = None, maker_fee_rate: Optional[float] = None):
        self.taker_fee_rate = taker_fee_rate
        self.maker_fee_rate = maker_fee_rate

    def build_engine(self, configuration: Dict[str, Any], initial_balance: float) -> PaperEngine:
        return PaperEngine(initial_balance, self.taker_fee_rate, self.maker_fee_rate)

    def build_evaluator(self, engine: PaperEngine, bot_id: str, configuration: Dict[str, Any]) -> MomentumEvaluator:
        strategy_type = configuration.get("strategy", {}).get("type")
        if strategy_type != "momentum":
            raise ValueError(f"MomentumBotFactory cannot build strategy {strategy_type!r}")
        return MomentumEvaluator(engine, bot_id, configuration)

    def precompute_patterns(self, candles: pd.DataFrame, configuration: Dict[str, Any]) -> List[Dict[str, float]]:
        return precompute_patterns(candles, configuration)
