"""
tests/test_run_registry.py
==========================
Run record state machine:
  1. not_found → running (claim with TTL) → completed|failed (durable).
  2. The claim is atomic: a second record_start for the same pair loses.
  3. Idempotent completion: two completions → the last one is what is read.
  4. Storage failures degrade to not_found / False, never raise.
  5. A stored record whose configHash does not match reads as not_found.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from botsweep.execution.run_registry import RunRegistry
from botsweep.models import BacktestContext, RunStatus, Trade
from botsweep.storage import keys
from botsweep.storage.kv_store import MemoryStore, StorageError

CTX = BacktestContext("BTC/USDT", "1h", 1_000, 2_000)


def _make_registry():
    store = MemoryStore()
    return RunRegistry(store), store


def _meta(profit):
    return {"performance": {"profit": profit}, "marketHistory": {}}


def _broken_store():
    store = MagicMock()
    for name in ("get", "set", "set_if_absent", "delete", "sadd", "srem", "zadd", "zrem", "smembers"):
        getattr(store, name).side_effect = StorageError("down")
    return store


# ─────────────────────────────────────────────────────────────────────────────
# 1. Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    def test_absent_is_not_found(self):
        reg, _ = _make_registry()
        assert reg.check_status(CTX.with_config("abc")) == RunStatus.NOT_FOUND

    def test_start_writes_running_with_ttl(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        assert reg.record_start(ctx, "bot-1", ttl_seconds=3600) is True
        assert reg.check_status(ctx) == RunStatus.RUNNING
        assert 0 < store.ttl(keys.run_key(ctx)) <= 3600

    def test_completion_is_durable(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        reg.record_start(ctx, "bot-1")
        assert reg.record_completion(ctx, "bot-1", RunStatus.COMPLETED, {"a": 1}, _meta(12.5)) is True
        assert reg.check_status(ctx) == RunStatus.COMPLETED
        assert store.ttl(keys.run_key(ctx)) == -1
        rec = reg.get_record(ctx)
        assert rec.configuration == {"a": 1}
        assert rec.profit == 12.5

    def test_failed_is_terminal(self):
        reg, _ = _make_registry()
        ctx = CTX.with_config("abc")
        reg.record_start(ctx, "bot-1")
        reg.record_completion(ctx, "bot-1", "failed", None, {"error": "boom"})
        assert reg.check_status(ctx) == RunStatus.FAILED
        # A terminal record blocks a new claim.
        assert reg.record_start(ctx, "bot-2") is False

    def test_completion_requires_terminal_status(self):
        reg, _ = _make_registry()
        with pytest.raises(ValueError):
            reg.record_completion(CTX.with_config("abc"), "bot-1", RunStatus.RUNNING, None, None)

    def test_idempotent_completion_last_write_wins(self):
        reg, _ = _make_registry()
        ctx = CTX.with_config("abc")
        reg.record_completion(ctx, "bot-1", RunStatus.COMPLETED, {"v": 1}, _meta(1.0))
        reg.record_completion(ctx, "bot-1", RunStatus.COMPLETED, {"v": 2}, _meta(2.0))
        rec = reg.get_record(ctx)
        assert rec.configuration == {"v": 2}
        assert rec.profit == 2.0


# ─────────────────────────────────────────────────────────────────────────────
# 2. Atomic claim
# ─────────────────────────────────────────────────────────────────────────────

class TestClaim:

    def test_second_claim_loses(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        assert reg.record_start(ctx, "bot-1") is True
        assert reg.record_start(ctx, "bot-2") is False
        assert json.loads(store.get(keys.run_key(ctx)))["botId"] == "bot-1"

    def test_two_registries_share_one_claim(self):
        store = MemoryStore()
        a, b = RunRegistry(store), RunRegistry(store)
        ctx = CTX.with_config("abc")
        results = [a.record_start(ctx, "bot-a"), b.record_start(ctx, "bot-b")]
        assert results == [True, False]


# ─────────────────────────────────────────────────────────────────────────────
# 3. Indexes
# ─────────────────────────────────────────────────────────────────────────────

class TestIndexes:

    def test_status_partition_moves(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        reg.record_start(ctx, "bot-1")
        assert store.smembers(keys.session_bots_key(ctx, "running")) == {"abc"}
        reg.record_completion(ctx, "bot-1", RunStatus.COMPLETED, None, _meta(7.0))
        assert store.smembers(keys.session_bots_key(ctx, "running")) == set()
        assert store.smembers(keys.session_bots_key(ctx, "completed")) == {"abc"}
        assert store.smembers(keys.session_bots_key(ctx)) == {"abc"}
        assert store.zrevrange_with_scores(keys.session_profit_key(ctx), 0, -1) == [("abc", 7.0)]

    def test_delete_removes_everything(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        reg.record_start(ctx, "bot-1")
        reg.record_completion(ctx, "bot-1", RunStatus.COMPLETED, None, _meta(7.0))
        reg.record_trades(ctx, [])
        assert reg.delete(ctx) is True
        assert reg.check_status(ctx) == RunStatus.NOT_FOUND
        assert store.get(keys.trades_key(ctx)) is None
        assert store.smembers(keys.session_bots_key(ctx)) == set()
        assert store.zrevrange_with_scores(keys.session_profit_key(ctx), 0, -1) == []


# ─────────────────────────────────────────────────────────────────────────────
# 4. Degradation
# ─────────────────────────────────────────────────────────────────────────────

class TestDegradation:

    def test_check_status_never_raises(self):
        reg = RunRegistry(_broken_store())
        assert reg.check_status(CTX.with_config("abc")) == RunStatus.NOT_FOUND

    def test_record_start_returns_false(self):
        reg = RunRegistry(_broken_store())
        assert reg.record_start(CTX.with_config("abc"), "bot-1") is False

    def test_record_completion_returns_false(self):
        reg = RunRegistry(_broken_store())
        assert reg.record_completion(CTX.with_config("abc"), "bot-1", "completed", None, None) is False

    def test_get_trades_empty(self):
        reg = RunRegistry(_broken_store())
        assert reg.get_trades(CTX.with_config("abc")) == []

    def test_index_failure_does_not_undo_claim(self):
        store = MemoryStore()
        store.sadd = MagicMock(side_effect=StorageError("index down"))
        reg = RunRegistry(store)
        ctx = CTX.with_config("abc")
        assert reg.record_start(ctx, "bot-1") is True
        assert reg.check_status(ctx) == RunStatus.RUNNING

    def test_hash_mismatch_reads_not_found(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        store.set(keys.run_key(ctx), json.dumps(
            {"status": "completed", "botId": "x", "configHash": "zzz", "lastUpdated": 1}
        ))
        assert reg.check_status(ctx) == RunStatus.NOT_FOUND

    def test_corrupt_json_reads_not_found(self):
        reg, store = _make_registry()
        ctx = CTX.with_config("abc")
        store.set(keys.run_key(ctx), "{not json")
        assert reg.check_status(ctx) == RunStatus.NOT_FOUND


# ─────────────────────────────────────────────────────────────────────────────
# 5. Trades
# ─────────────────────────────────────────────────────────────────────────────

class TestTrades:

    def test_round_trip(self):
        reg, _ = _make_registry()
        ctx = CTX.with_config("abc")
        trades = [
            Trade("bot-1-1", "LONG", 1, 100.0, 5.0, 3, 110.0, 5.0, 50.0),
            Trade("bot-1-2", "SHORT", 4, 110.0, -2.0, 6, 112.0, -2.0, -4.0, "open_at_end"),
        ]
        assert reg.record_trades(ctx, trades) is True
        assert reg.get_trades(ctx) == trades
