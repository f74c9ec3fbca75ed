"""
models.py — Canonical records for the backtest sweep
====================================================
Single source of truth for the data contract between the orchestrator, the
shared store, and any reader of that store (dashboard, session_command).

Python attributes are snake_case. The persisted JSON keeps the camelCase
names the dashboard already reads:

  BacktestRunRecord   status, botId, configHash, lastUpdated,
                      resultsMetadata, configuration
  SessionSummary      runCount, lastConfigHash, lastUpdate, bestProfit,
                      bestConfigHash, currentProfit, currentStatus,
                      avgProfit, errorCount, completedRuns, active, notes
  Trade               id, type, entryTimestamp, entryPrice, entrySize,
                      exitTimestamp, exitPrice, exitSize, realizedPnl,
                      exitReason

Usage
-----
  from botsweep.models import BacktestContext, SessionSummary

  ctx = BacktestContext("BTC/USDT", "1h", 1704067200000, 1709251200000)
  run_ctx = ctx.with_config("9f2c…")
  summary = SessionSummary.for_context(ctx)
  payload = summary.to_dict()
"""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from .storage.keys import format_context_id, parse_context_id


def now_ms() -> int:
    """Wall-clock epoch milliseconds, the timestamp unit used in every record."""
    return int(time.time() * 1000)


# ── Status enums ─────────────────────────────────────────────────────────────

class RunStatus(Enum):
    NOT_FOUND = "not_found"   # no record (never persisted)
    RUNNING   = "running"     # claimed, TTL-bounded
    COMPLETED = "completed"   # terminal, durable
    FAILED    = "failed"      # terminal, durable

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class SessionStatus(Enum):
    RUNNING   = "running"
    PAUSED    = "paused"      # written by an outside actor
    COMPLETED = "completed"
    FAILED    = "failed"
    STOPPED   = "stopped"     # written by an outside actor or on cancel


EXIT_CLOSED      = "closed"
EXIT_REVERSAL    = "reversal"
EXIT_OPEN_AT_END = "open_at_end"


# ── Context ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BacktestContext:
    """Identifies one backtest scope. All storage keys derive from it."""

    symbol:          str
    timeframe:       str
    start_timestamp: int
    end_timestamp:   int
    config_hash:     Optional[str] = None

    @property
    def session_id(self) -> str:
        return format_context_id(
            self.symbol, self.timeframe, self.start_timestamp, self.end_timestamp
        )

    def with_config(self, config_hash: str) -> "BacktestContext":
        return replace(self, config_hash=config_hash)

    def without_config(self) -> "BacktestContext":
        return replace(self, config_hash=None)

    @classmethod
    def from_session_id(cls, session_id: str, config_hash: Optional[str] = None) -> "BacktestContext":
        parts = parse_context_id(session_id)
        return cls(
            symbol=parts["symbol"],
            timeframe=parts["timeframe"],
            start_timestamp=parts["start_timestamp"],
            end_timestamp=parts["end_timestamp"],
            config_hash=config_hash,
        )


# ── Simulation snapshots ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class Position:
    """
    Position snapshot reported by the simulation engine after each step.
    size is signed: > 0 long, < 0 short, 0 flat.
    """

    size:           float = 0.0
    entry_price:    float = 0.0
    realized_pnl:   float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def is_flat(self) -> bool:
        return self.size == 0

    @classmethod
    def coerce(cls, raw: Any) -> "Position":
        """Accept a Position, a camelCase/snake_case dict, or any object with matching attributes."""
        if raw is None:
            return cls()
        if isinstance(raw, Position):
            return raw
        if isinstance(raw, dict):
            def pick(camel: str, snake: str) -> float:
                value = raw.get(camel, raw.get(snake, 0.0))
                return float(value or 0.0)
            return cls(
                size=pick("size", "size"),
                entry_price=pick("entryPrice", "entry_price"),
                realized_pnl=pick("realizedPnl", "realized_pnl"),
                unrealized_pnl=pick("unrealizedPnl", "unrealized_pnl"),
            )
        return cls(
            size=float(getattr(raw, "size", 0.0) or 0.0),
            entry_price=float(getattr(raw, "entry_price", 0.0) or 0.0),
            realized_pnl=float(getattr(raw, "realized_pnl", 0.0) or 0.0),
            unrealized_pnl=float(getattr(raw, "unrealized_pnl", 0.0) or 0.0),
        )


@dataclass(frozen=True)
class Trade:
    """One closed round trip. Never modified after it is appended to a run's list."""

    id:              str
    side:            str      # 'LONG' or 'SHORT'
    entry_timestamp: int
    entry_price:     float
    entry_size:      float    # signed, as reported by the engine
    exit_timestamp:  int
    exit_price:      float
    exit_size:       float
    realized_pnl:    float
    exit_reason:     str = EXIT_CLOSED

    @property
    def is_marked(self) -> bool:
        """True for the synthetic close of a position still open at end of data."""
        return self.exit_reason == EXIT_OPEN_AT_END

    @property
    def duration(self) -> int:
        return self.exit_timestamp - self.entry_timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":             self.id,
            "type":           self.side,
            "entryTimestamp": self.entry_timestamp,
            "entryPrice":     self.entry_price,
            "entrySize":      self.entry_size,
            "exitTimestamp":  self.exit_timestamp,
            "exitPrice":      self.exit_price,
            "exitSize":       self.exit_size,
            "realizedPnl":    self.realized_pnl,
            "exitReason":     self.exit_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        return cls(
            id=str(data.get("id", "")),
            side=str(data.get("type", "LONG")),
            entry_timestamp=int(data["entryTimestamp"]),
            entry_price=float(data["entryPrice"]),
            entry_size=float(data["entrySize"]),
            exit_timestamp=int(data["exitTimestamp"]),
            exit_price=float(data["exitPrice"]),
            exit_size=float(data["exitSize"]),
            realized_pnl=float(data["realizedPnl"]),
            exit_reason=str(data.get("exitReason", EXIT_CLOSED)),
        )


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class PerformanceResult:
    """Numbers derived from one run's trade list."""

    profit:             float = 0.0   # finalBalance − initialBalance
    num_trades:         int   = 0     # closed trades only
    wins:               int   = 0
    losses:             int   = 0
    win_rate:           float = 0.0   # fraction 0..1
    sharpe_ratio:       float = 0.0   # per-trade, population std-dev
    max_drawdown:       float = 0.0   # fraction 0..1
    profit_factor:      float = 0.0
    avg_trade_duration: float = 0.0   # same unit as timestamps (ms)
    unrealized_pnl:     float = 0.0   # mark-to-market of a position open at the end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profit":           self.profit,
            "trades":           self.num_trades,
            "numTrades":        self.num_trades,
            "wins":             self.wins,
            "losses":           self.losses,
            "winRate":          self.win_rate,
            "sharpeRatio":      self.sharpe_ratio,
            "maxDrawdown":      self.max_drawdown,
            "profitFactor":     self.profit_factor,
            "avgTradeDuration": self.avg_trade_duration,
            "unrealizedPnl":    self.unrealized_pnl,
        }


@dataclass
class MarketHistory:
    start_price: float = 0.0
    end_price:   float = 0.0
    high_price:  float = 0.0
    low_price:   float = 0.0
    volatility:  float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startPrice": self.start_price,
            "endPrice":   self.end_price,
            "highPrice":  self.high_price,
            "lowPrice":   self.low_price,
            "volatility": self.volatility,
        }


# ── Persisted records ────────────────────────────────────────────────────────

@dataclass
class BacktestRunRecord:
    """One configuration's outcome. Owned by RunRegistry."""

    status:           RunStatus
    bot_id:           str
    config_hash:      str
    last_updated:     int
    results_metadata: Optional[Dict[str, Any]] = None
    configuration:    Optional[Dict[str, Any]] = None

    @property
    def profit(self) -> float:
        perf = (self.results_metadata or {}).get("performance") or {}
        try:
            return float(perf.get("profit", 0.0) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status":      self.status.value,
            "botId":       self.bot_id,
            "configHash":  self.config_hash,
            "lastUpdated": self.last_updated,
        }
        if self.results_metadata is not None:
            payload["resultsMetadata"] = self.results_metadata
        if self.configuration is not None:
            payload["configuration"] = self.configuration
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestRunRecord":
        status = RunStatus(data["status"])
        if status == RunStatus.NOT_FOUND:
            raise ValueError("a stored run record cannot carry status 'not_found'")
        return cls(
            status=status,
            bot_id=str(data.get("botId", "")),
            config_hash=str(data.get("configHash", "")),
            last_updated=int(data.get("lastUpdated", 0)),
            results_metadata=data.get("resultsMetadata"),
            configuration=data.get("configuration"),
        )


@dataclass
class SessionSummary:
    """Aggregate over all runs in a context. Owned by SessionController."""

    symbol:           str
    timeframe:        str
    start_timestamp:  int
    end_timestamp:    int
    run_count:        int   = 0
    last_config_hash: str   = ""
    last_update:      int   = 0
    best_profit:      float = 0.0
    best_config_hash: str   = ""
    current_profit:   float = 0.0
    current_status:   SessionStatus = SessionStatus.RUNNING
    avg_profit:       float = 0.0
    error_count:      int   = 0
    completed_runs:   int   = 0
    active:           bool  = False
    notes:            str   = ""

    @classmethod
    def for_context(cls, ctx: BacktestContext, **kwargs) -> "SessionSummary":
        return cls(
            symbol=ctx.symbol,
            timeframe=ctx.timeframe,
            start_timestamp=ctx.start_timestamp,
            end_timestamp=ctx.end_timestamp,
            **kwargs,
        )

    @property
    def context(self) -> BacktestContext:
        return BacktestContext(
            self.symbol, self.timeframe, self.start_timestamp, self.end_timestamp
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol":         self.symbol,
            "timeframe":      self.timeframe,
            "startTimestamp": self.start_timestamp,
            "endTimestamp":   self.end_timestamp,
            "runCount":       self.run_count,
            "lastConfigHash": self.last_config_hash,
            "lastUpdate":     self.last_update,
            "bestProfit":     self.best_profit,
            "bestConfigHash": self.best_config_hash,
            "currentProfit":  self.current_profit,
            "currentStatus":  self.current_status.value,
            "avgProfit":      self.avg_profit,
            "errorCount":     self.error_count,
            "completedRuns":  self.completed_runs,
            "active":         self.active,
            "notes":          self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSummary":
        return cls(
            symbol=str(data["symbol"]),
            timeframe=str(data["timeframe"]),
            start_timestamp=int(data["startTimestamp"]),
            end_timestamp=int(data["endTimestamp"]),
            run_count=int(data.get("runCount", 0)),
            last_config_hash=str(data.get("lastConfigHash", "")),
            last_update=int(data.get("lastUpdate", 0)),
            best_profit=float(data.get("bestProfit", 0.0)),
            best_config_hash=str(data.get("bestConfigHash", "")),
            current_profit=float(data.get("currentProfit", 0.0)),
            current_status=SessionStatus(data.get("currentStatus", "running")),
            avg_profit=float(data.get("avgProfit", 0.0)),
            error_count=int(data.get("errorCount", 0)),
            completed_runs=int(data.get("completedRuns", 0)),
            active=bool(data.get("active", False)),
            notes=str(data.get("notes") or ""),
        )
