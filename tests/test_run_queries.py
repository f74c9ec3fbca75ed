"""
tests/test_run_queries.py
=========================
Read-side queries:
  1. list_runs filters by status and profit range, pages with an opaque
     cursor, and returns nextCursor "0" once exhausted. Limit clamps to 1..100.
  2. aggregate_stats counts per status and reports profit extremes
     (zeros for an empty session).
  3. top_runs reads the profit index highest first.
  4. Read failures degrade to empty results.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from botsweep.execution.run_queries import RunQueries
from botsweep.execution.run_registry import RunRegistry
from botsweep.execution.session_control import SessionController
from botsweep.models import BacktestContext, RunStatus, SessionSummary
from botsweep.storage.kv_store import MemoryStore, StorageError

CTX = BacktestContext("ETH/USDT", "15m", 10, 20)


def _seed(store, profits, failed=0, running=0):
    """Completed runs h00.. with the given profits, plus failed/running ones."""
    reg = RunRegistry(store)
    for i, p in enumerate(profits):
        ctx = CTX.with_config(f"h{i:02d}")
        reg.record_start(ctx, f"bot-{i}")
        reg.record_completion(ctx, f"bot-{i}", RunStatus.COMPLETED, {},
                              {"performance": {"profit": p}})
    for j in range(failed):
        ctx = CTX.with_config(f"f{j:02d}")
        reg.record_start(ctx, f"fbot-{j}")
        reg.record_completion(ctx, f"fbot-{j}", RunStatus.FAILED, {}, {"error": "x"})
    for k in range(running):
        reg.record_start(CTX.with_config(f"r{k:02d}"), f"rbot-{k}")


def _make_queries(profits=(), failed=0, running=0):
    store = MemoryStore()
    _seed(store, profits, failed, running)
    return RunQueries(store), store


# ─────────────────────────────────────────────────────────────────────────────
# 1. list_runs
# ─────────────────────────────────────────────────────────────────────────────

class TestListRuns:

    def test_row_shape(self):
        q, _ = _make_queries([5.0])
        page = q.list_runs(CTX)
        assert page["nextCursor"] == "0"
        assert page["runs"] == [{
            "configHash": "h00", "status": "completed", "profit": 5.0,
            "botId": "bot-0", "lastUpdated": page["runs"][0]["lastUpdated"],
        }]

    def test_pagination_drains(self):
        q, _ = _make_queries([float(i) for i in range(7)])
        seen, cursor, pages = [], "0", 0
        while True:
            page = q.list_runs(CTX, cursor=cursor, limit=3)
            seen.extend(r["configHash"] for r in page["runs"])
            pages += 1
            cursor = page["nextCursor"]
            if cursor == "0":
                break
        assert pages == 3
        assert sorted(seen) == [f"h{i:02d}" for i in range(7)]
        assert len(set(seen)) == 7

    def test_status_filter(self):
        q, _ = _make_queries([1.0, 2.0], failed=2, running=1)
        assert {r["configHash"] for r in q.list_runs(CTX, status="failed")["runs"]} == {"f00", "f01"}
        assert [r["configHash"] for r in q.list_runs(CTX, status="running")["runs"]] == ["r00"]
        assert len(q.list_runs(CTX)["runs"]) == 5

    def test_profit_range(self):
        q, _ = _make_queries([-10.0, 0.0, 5.0, 20.0])
        rows = q.list_runs(CTX, status="completed", min_profit=0.0, max_profit=10.0)["runs"]
        assert sorted(r["profit"] for r in rows) == [0.0, 5.0]

    def test_limit_clamped(self):
        q, _ = _make_queries([float(i) for i in range(120)])
        assert len(q.list_runs(CTX, limit=1000)["runs"]) == 100
        assert len(q.list_runs(CTX, limit=0)["runs"]) == 1
        assert len(q.list_runs(CTX)["runs"]) == 50

    def test_bad_cursor_starts_over(self):
        q, _ = _make_queries([1.0, 2.0])
        assert len(q.list_runs(CTX, cursor="garbage")["runs"]) == 2


# ─────────────────────────────────────────────────────────────────────────────
# 2–3. Stats and ranking
# ─────────────────────────────────────────────────────────────────────────────

class TestStats:

    def test_aggregate(self):
        q, _ = _make_queries([10.0, -5.0, 25.0], failed=1, running=2)
        stats = q.aggregate_stats(CTX)
        assert stats == {
            "totalBots": 6,
            "completedBots": 3,
            "runningBots": 2,
            "failedBots": 1,
            "avgProfit": 10.0,
            "bestProfit": 25.0,
            "worstProfit": -5.0,
        }

    def test_empty_session_zeros(self):
        q, _ = _make_queries()
        stats = q.aggregate_stats(CTX)
        assert stats["totalBots"] == 0
        assert stats["avgProfit"] == stats["bestProfit"] == stats["worstProfit"] == 0.0

    def test_top_runs(self):
        q, _ = _make_queries([3.0, 9.0, -1.0, 7.0])
        top = q.top_runs(CTX, limit=2)
        assert [r["profit"] for r in top] == [9.0, 7.0]


class TestSessionsAndRuns:

    def test_sessions(self):
        store = MemoryStore()
        ctrl = SessionController(store)
        ctrl.update(CTX, SessionSummary.for_context(CTX, last_update=1))
        other = BacktestContext("BTC/USDT", "1h", 0, 1)
        ctrl.update(other, SessionSummary.for_context(other, last_update=2))
        q = RunQueries(store)
        assert q.get_session(CTX.with_config("anything")).symbol == "ETH/USDT"
        assert [s.symbol for s in q.list_sessions()] == ["BTC/USDT", "ETH/USDT"]

    def test_get_run_and_trades(self):
        q, _ = _make_queries([4.0])
        assert q.get_run(CTX.with_config("h00")).profit == 4.0
        assert q.get_run(CTX.with_config("nope")) is None
        assert q.get_trades(CTX.with_config("h00")) == []


# ─────────────────────────────────────────────────────────────────────────────
# 4. Degradation
# ─────────────────────────────────────────────────────────────────────────────

class TestDegradation:

    def test_everything_empty_when_store_down(self):
        store = MagicMock()
        for name in ("get", "smembers", "zrevrange_with_scores", "scan_keys"):
            getattr(store, name).side_effect = StorageError("down")
        q = RunQueries(store)
        assert q.list_runs(CTX) == {"runs": [], "nextCursor": "0"}
        assert q.aggregate_stats(CTX)["totalBots"] == 0
        assert q.top_runs(CTX) == []
        assert q.list_sessions() == []
        assert q.get_session(CTX) is None
