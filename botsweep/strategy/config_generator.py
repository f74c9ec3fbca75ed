"""
Random bot-configuration generator.

Draws one value per knob from a discrete grid. A seeded generator replays the
same sequence, which makes sweeps reproducible and lets tests force
collisions.

Output shape (the wire format the dashboard shows):
    {
      "strategy":       {"type": "momentum", "params": {...}},
      "riskManagement": {"stopLoss": 0.02, "takeProfit": 0.04, "trailingStop": False},
      "positionSizing": {"type": "fixed_fraction", "value": 0.25},
      "timeframe": "1h",
      "symbol": "BTC/USDT",
    }
No botId: that is assigned per attempt by the orchestrator and is not part of
the configuration's identity.
"""
import copy
import random
from typing import Any, Dict, Optional

DEFAULT_GRID: Dict[str, Dict[str, list]] = {
    "params": {
        "emaFast":        [5, 8, 9, 12],
        "emaSlow":        [20, 26, 34, 50],
        "rsiPeriod":      [7, 14, 21],
        "rsiUpper":       [60, 65, 70],
        "rsiLower":       [30, 35, 40],
        "entryOrderType": ["market", "limit"],
        "limitOffset":    [0.001, 0.0025],
    },
    "riskManagement": {
        "stopLoss":       [0.01, 0.02, 0.03, 0.05],
        "takeProfit":     [0.02, 0.04, 0.06, 0.10],
        "trailingStop":   [False, True],
    },
    "positionSizing": {
        "type":           ["fixed_fraction"],
        "value":          [0.10, 0.25, 0.50],
    },
}


class ConfigGenerator:
    """Callable: generator() → new configuration dict."""

    def __init__(
        self,
        symbol: str,
        timeframe: str,
        seed: Optional[int] = None,
        grid: Optional[Dict[str, Dict[str, list]]] = None,
        strategy_type: str = "momentum",
    ):
        self.symbol = symbol
        self.timeframe = timeframe
        self.strategy_type = strategy_type
        self.grid = copy.deepcopy(grid or DEFAULT_GRID)
        self._rng = random.Random(seed)

    @property
    def space_size(self) -> int:
        """Number of distinct configurations the grid can produce."""
        n = 1
        for section in self.grid.values():
            for values in section.values():
                n *= max(len(values), 1)
        return n

    def _draw(self, section: str) -> Dict[str, Any]:
        return {k: self._rng.choice(v) for k, v in self.grid.get(section, {}).items()}

    def generate(self) -> Dict[str, Any]:
        return {
            "strategy":       {"type": self.strategy_type, "params": self._draw("params")},
            "riskManagement": self._draw("riskManagement"),
            "positionSizing": self._draw("positionSizing"),
            "timeframe":      self.timeframe,
            "symbol":         self.symbol,
        }

    __call__ = generate
