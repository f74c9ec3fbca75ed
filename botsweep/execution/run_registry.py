"""
run_registry.py — Per-configuration run records
===============================================
One record per (context, configHash). Lifecycle:

    not_found ──record_start──▶ running ──record_completion──▶ completed | failed

  • running   : written with SET NX + TTL (default 24h). The atomic claim is
                what guarantees exclusivity; check_status() is advisory and
                only saves work. A crashed worker's claim expires on its own.
  • completed / failed : full overwrite, no TTL (durable). Carries the
                configuration and resultsMetadata. Nothing leaves these states
                except an administrative delete().

Every store failure is caught HERE and turned into False / None / not_found.
A stalled store must never stall the campaign.

Secondary indexes (session_bots:*, session_profit:*) are bookkeeping for
readers. They are written after the record and are never authoritative.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from .. import sweep_config as cfg
from ..models import (
    BacktestContext, BacktestRunRecord, RunStatus, Trade, now_ms,
)
from ..storage import keys
from ..storage.kv_store import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

_PARTITIONS = (RunStatus.RUNNING, RunStatus.COMPLETED, RunStatus.FAILED)


class RunRegistry:

    def __init__(self, store: KeyValueStore):
        self._store = store

    # ── Read ───────────────────────────────────────────────────────────

    def check_status(self, ctx: BacktestContext) -> RunStatus:
        """Never raises. Absent, mismatched or unreadable → NOT_FOUND."""
        record = self.get_record(ctx)
        if record is None:
            return RunStatus.NOT_FOUND
        return record.status

    def get_record(self, ctx: BacktestContext) -> Optional[BacktestRunRecord]:
        try:
            raw = self._store.get(keys.run_key(ctx))
        except (StorageError, ValueError) as e:
            logger.warning(f"run registry: read failed for {ctx.config_hash} — {e}")
            return None
        if raw is None:
            return None
        try:
            record = BacktestRunRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"run registry: unreadable record for {ctx.config_hash} — {e}")
            return None
        if record.config_hash != ctx.config_hash:
            logger.warning(
                f"run registry: stored configHash {record.config_hash!r} != "
                f"requested {ctx.config_hash!r} — treating as not_found"
            )
            return None
        return record

    def get_trades(self, ctx: BacktestContext) -> List[Trade]:
        try:
            raw = self._store.get(keys.trades_key(ctx))
        except StorageError as e:
            logger.warning(f"run registry: trade read failed for {ctx.config_hash} — {e}")
            return []
        if not raw:
            return []
        try:
            return [Trade.from_dict(t) for t in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"run registry: unreadable trades for {ctx.config_hash} — {e}")
            return []

    # ── Write ──────────────────────────────────────────────────────────

    def record_start(
        self,
        ctx: BacktestContext,
        bot_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """
        Claim the configuration. True only if this call created the record.

        False means either someone else holds it or the store is unavailable;
        the caller tells the two apart with check_status().
        """
        ttl = ttl_seconds if ttl_seconds is not None else cfg.RUN_CLAIM_TTL_SECONDS
        record = BacktestRunRecord(
            status=RunStatus.RUNNING,
            bot_id=bot_id,
            config_hash=ctx.config_hash,
            last_updated=now_ms(),
        )
        try:
            claimed = self._store.set_if_absent(
                keys.run_key(ctx), json.dumps(record.to_dict()), ttl_seconds=ttl
            )
        except StorageError as e:
            logger.error(f"run registry: claim failed for {ctx.config_hash} — {e}")
            return False

        if not claimed:
            logger.info(f"run registry: {ctx.config_hash[:8]} already claimed")
            return False

        self._index(ctx, RunStatus.RUNNING)
        return True

    def record_completion(
        self,
        ctx: BacktestContext,
        bot_id: str,
        status: Union[RunStatus, str],
        configuration: Optional[Dict[str, Any]],
        results_metadata: Optional[Dict[str, Any]],
    ) -> bool:
        """Durable overwrite with a terminal status. Last write wins."""
        status = RunStatus(status)
        if not status.is_terminal:
            raise ValueError(f"record_completion needs a terminal status, got {status.value!r}")

        record = BacktestRunRecord(
            status=status,
            bot_id=bot_id,
            config_hash=ctx.config_hash,
            last_updated=now_ms(),
            results_metadata=results_metadata,
            configuration=configuration,
        )
        try:
            self._store.set(keys.run_key(ctx), json.dumps(record.to_dict(), default=str))
        except StorageError as e:
            logger.error(f"run registry: completion write failed for {ctx.config_hash} — {e}")
            return False

        self._index(ctx, status, profit=record.profit)
        return True

    def record_trades(self, ctx: BacktestContext, trades: Sequence[Trade]) -> bool:
        """One write per run, the full list."""
        try:
            self._store.set(
                keys.trades_key(ctx),
                json.dumps([t.to_dict() for t in trades]),
            )
        except StorageError as e:
            logger.error(f"run registry: trade write failed for {ctx.config_hash} — {e}")
            return False
        return True

    def delete(self, ctx: BacktestContext) -> bool:
        """Administrative removal of the record, its trades and its index entries."""
        try:
            self._store.delete(keys.run_key(ctx), keys.trades_key(ctx))
            self._store.srem(keys.session_bots_key(ctx), ctx.config_hash)
            for status in _PARTITIONS:
                self._store.srem(keys.session_bots_key(ctx, status.value), ctx.config_hash)
            self._store.zrem(keys.session_profit_key(ctx), ctx.config_hash)
        except StorageError as e:
            logger.error(f"run registry: delete failed for {ctx.config_hash} — {e}")
            return False
        logger.info(f"🗑  run {ctx.config_hash[:8]} deleted from {ctx.session_id}")
        return True

    # ── Index bookkeeping ──────────────────────────────────────────────

    def _index(self, ctx: BacktestContext, status: RunStatus, profit: Optional[float] = None) -> None:
        h = ctx.config_hash
        try:
            self._store.sadd(keys.session_bots_key(ctx), h)
            for other in _PARTITIONS:
                if other != status:
                    self._store.srem(keys.session_bots_key(ctx, other.value), h)
            self._store.sadd(keys.session_bots_key(ctx, status.value), h)
            if status == RunStatus.COMPLETED:
                self._store.zadd(keys.session_profit_key(ctx), {h: float(profit or 0.0)})
            elif status == RunStatus.FAILED:
                self._store.zrem(keys.session_profit_key(ctx), h)
        except StorageError as e:
            logger.warning(f"run registry: index update failed for {h[:8]} — {e}")
