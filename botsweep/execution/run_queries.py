"""
run_queries.py — Read side for dashboards and operator scripts
==============================================================
Never writes. Every failure degrades to an empty result.

  get_session(ctx)          SessionSummary | None
  list_sessions()           [SessionSummary]
  get_run(ctx)              BacktestRunRecord | None   (ctx carries configHash)
  get_trades(ctx)           [Trade]
  list_runs(ctx, ...)       one page of run rows + nextCursor
  aggregate_stats(ctx)      totals and profit extremes for a session
  top_runs(ctx, limit)      best runs from the profit index

Paging: the cursor is an opaque string offset into the sorted hash list of
the session index. "0" starts, and a returned nextCursor of "0" means done.
Filters are applied before paging so pages stay full.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .. import sweep_config as cfg
from ..models import BacktestContext, BacktestRunRecord, RunStatus, SessionSummary, Trade
from ..storage import keys
from ..storage.kv_store import KeyValueStore, StorageError
from .run_registry import RunRegistry
from .session_control import SessionController

logger = logging.getLogger(__name__)


def _row(record: BacktestRunRecord) -> Dict[str, Any]:
    return {
        "configHash":  record.config_hash,
        "status":      record.status.value,
        "profit":      record.profit,
        "botId":       record.bot_id,
        "lastUpdated": record.last_updated,
    }


class RunQueries:

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._registry = RunRegistry(store)
        self._sessions = SessionController(store)

    # ── Sessions ───────────────────────────────────────────────────────

    def get_session(self, ctx: BacktestContext) -> Optional[SessionSummary]:
        return self._sessions.fetch(ctx.without_config())

    def list_sessions(self) -> List[SessionSummary]:
        return sorted(self._sessions.list_all(), key=lambda s: s.last_update, reverse=True)

    # ── Runs ───────────────────────────────────────────────────────────

    def get_run(self, ctx: BacktestContext) -> Optional[BacktestRunRecord]:
        return self._registry.get_record(ctx)

    def get_trades(self, ctx: BacktestContext) -> List[Trade]:
        return self._registry.get_trades(ctx)

    def _hashes(self, ctx: BacktestContext, status: Optional[str] = None) -> List[str]:
        try:
            return sorted(self._store.smembers(keys.session_bots_key(ctx, status)))
        except StorageError as e:
            logger.warning(f"run index read failed for {ctx.session_id} — {e}")
            return []

    def _records(self, ctx: BacktestContext, hashes: List[str]) -> List[BacktestRunRecord]:
        out = []
        for h in hashes:
            record = self._registry.get_record(ctx.with_config(h))
            if record is not None:
                out.append(record)
        return out

    def list_runs(
        self,
        ctx: BacktestContext,
        status: Optional[str] = None,
        min_profit: Optional[float] = None,
        max_profit: Optional[float] = None,
        cursor: str = "0",
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """{"runs": [...], "nextCursor": "<offset>" | "0"}"""
        ctx = ctx.without_config()
        limit = cfg.RUN_PAGE_LIMIT_DEFAULT if limit is None else int(limit)
        limit = max(1, min(limit, cfg.RUN_PAGE_LIMIT_MAX))
        try:
            offset = max(0, int(cursor or "0"))
        except ValueError:
            offset = 0
        if status is not None:
            status = RunStatus(status).value

        rows = []
        for record in self._records(ctx, self._hashes(ctx, status)):
            if status is not None and record.status.value != status:
                continue    # index lagged behind the record
            if min_profit is not None and record.profit < min_profit:
                continue
            if max_profit is not None and record.profit > max_profit:
                continue
            rows.append(_row(record))

        page = rows[offset: offset + limit]
        end = offset + len(page)
        return {"runs": page, "nextCursor": str(end) if end < len(rows) else "0"}

    def aggregate_stats(self, ctx: BacktestContext) -> Dict[str, Any]:
        ctx = ctx.without_config()
        records = self._records(ctx, self._hashes(ctx))
        profits = [r.profit for r in records if r.status == RunStatus.COMPLETED]
        return {
            "totalBots":     len(records),
            "completedBots": sum(1 for r in records if r.status == RunStatus.COMPLETED),
            "runningBots":   sum(1 for r in records if r.status == RunStatus.RUNNING),
            "failedBots":    sum(1 for r in records if r.status == RunStatus.FAILED),
            "avgProfit":     sum(profits) / len(profits) if profits else 0.0,
            "bestProfit":    max(profits) if profits else 0.0,
            "worstProfit":   min(profits) if profits else 0.0,
        }

    def top_runs(self, ctx: BacktestContext, limit: int = 10) -> List[Dict[str, Any]]:
        ctx = ctx.without_config()
        try:
            ranked = self._store.zrevrange_with_scores(keys.session_profit_key(ctx), 0, max(1, limit) - 1)
        except StorageError as e:
            logger.warning(f"profit index read failed for {ctx.session_id} — {e}")
            return []
        rows = []
        for h, _score in ranked:
            record = self._registry.get_record(ctx.with_config(h))
            if record is not None:
                rows.append(_row(record))
        return rows
