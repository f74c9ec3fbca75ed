"""
session_control.py
==================
Session-level state for a sweep: the SessionSummary record, the running
aggregates that feed it, and the pause / resume / stop protocol.

Session state machine:

    running ⇄ paused
    running → stopped      (outside actor, or the orchestrator's cancel token)
    running → completed    (orchestrator, at loop exit)
    running → failed       (orchestrator, on an unexpected error)

paused and stopped are written by someone else (session_command, the
dashboard, another process). The orchestrator only reads them between runs.

Design principles:
  • update() is an idempotent full overwrite. Last writer wins, no merge.
  • fetch() returns None on absence OR storage failure. Never raises.
  • list_all() drains the full key scan before returning.
  • Waiting while paused blocks on an Event. request_*() in this process wake
    the waiter at once; writes from other processes are seen on the periodic
    re-read (PAUSE_POLL_SECONDS).

Usage:
    from botsweep.execution.session_control import SessionController

    ctrl = SessionController(store)
    ctrl.request_pause(ctx, notes="rebalancing data")
    ctrl.request_resume(ctx)
    for summary in ctrl.list_all():
        ...
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .. import sweep_config as cfg
from ..models import BacktestContext, SessionStatus, SessionSummary, now_ms
from ..storage import keys
from ..storage.kv_store import KeyValueStore, StorageError

logger = logging.getLogger(__name__)


# ── Cancellation ─────────────────────────────────────────────────────────────

class CancellationToken:
    """
    Cooperative stop flag handed into RunOrchestrator.run().

    Setting it never interrupts a run in progress; the orchestrator checks it
    at the top of each iteration and while paused.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logger.warning(f"cancel callback raised: {e}")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def add_callback(self, cb: Callable[[], None]) -> None:
        """Run cb on cancel. Runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(cb)
                return
        cb()

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)


# ── Aggregates ───────────────────────────────────────────────────────────────

@dataclass
class SessionAccumulator:
    """
    Running aggregates threaded through the orchestrator loop.

    Seeded from the stored SessionSummary so a restarted orchestrator carries
    on from the persisted counts instead of starting at zero.
    run_count counts simulated runs; completed_runs counts the ones whose
    completion record was persisted.
    """

    run_count:        int   = 0
    completed_runs:   int   = 0
    error_count:      int   = 0
    total_profit:     float = 0.0
    best_profit:      float = 0.0
    best_config_hash: str   = ""
    current_profit:   float = 0.0
    last_config_hash: str   = ""

    @classmethod
    def from_summary(cls, summary: Optional[SessionSummary]) -> "SessionAccumulator":
        if summary is None:
            return cls()
        return cls(
            run_count=summary.run_count,
            completed_runs=summary.completed_runs,
            error_count=summary.error_count,
            total_profit=summary.avg_profit * summary.run_count,
            best_profit=summary.best_profit,
            best_config_hash=summary.best_config_hash,
            current_profit=summary.current_profit,
            last_config_hash=summary.last_config_hash,
        )

    @property
    def avg_profit(self) -> float:
        return self.total_profit / self.run_count if self.run_count else 0.0

    def record_run(self, config_hash: str, profit: float, persisted: bool = True) -> None:
        first = self.run_count == 0 or not self.best_config_hash
        self.run_count += 1
        self.total_profit += profit
        self.current_profit = profit
        self.last_config_hash = config_hash
        if persisted:
            self.completed_runs += 1
        else:
            self.error_count += 1
        # Strictly greater: on a tie the earlier configuration keeps the title.
        if first or profit > self.best_profit:
            self.best_profit = profit
            self.best_config_hash = config_hash

    def record_skip(self) -> None:
        self.error_count += 1

    def record_error(self) -> None:
        self.error_count += 1

    def to_summary(
        self,
        ctx: BacktestContext,
        status: SessionStatus,
        active: bool,
        notes: str = "",
    ) -> SessionSummary:
        return SessionSummary.for_context(
            ctx,
            run_count=self.run_count,
            last_config_hash=self.last_config_hash,
            last_update=now_ms(),
            best_profit=self.best_profit,
            best_config_hash=self.best_config_hash,
            current_profit=self.current_profit,
            current_status=status,
            avg_profit=self.avg_profit,
            error_count=self.error_count,
            completed_runs=self.completed_runs,
            active=active,
            notes=notes,
        )


# ── Controller ───────────────────────────────────────────────────────────────

class SessionController:
    """Reads and writes session:{ctx}. One instance may serve many sessions."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._wakeups: Dict[str, threading.Event] = {}
        self._wakeups_lock = threading.Lock()

    def _wakeup(self, ctx: BacktestContext) -> threading.Event:
        with self._wakeups_lock:
            return self._wakeups.setdefault(ctx.session_id, threading.Event())

    # ── Read ───────────────────────────────────────────────────────────

    def fetch(self, ctx: BacktestContext) -> Optional[SessionSummary]:
        try:
            raw = self._store.get(keys.session_key(ctx))
        except StorageError as e:
            logger.warning(f"session {ctx.session_id}: read failed — {e}")
            return None
        if raw is None:
            return None
        try:
            return SessionSummary.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"session {ctx.session_id}: unreadable summary — {e}")
            return None

    def list_all(self) -> List[SessionSummary]:
        """Every stored session, by full scan of session:*."""
        try:
            found = list(self._store.scan_keys(keys.session_scan_pattern(), cfg.SCAN_BATCH_SIZE))
        except StorageError as e:
            logger.warning(f"session scan failed — {e}")
            return []

        summaries = []
        for key in found:
            try:
                ctx = BacktestContext.from_session_id(keys.session_id_from_key(key))
            except ValueError:
                logger.warning(f"session scan: skipping malformed key {key!r}")
                continue
            summary = self.fetch(ctx)
            if summary is not None:
                summaries.append(summary)
        return summaries

    def current_status(self, ctx: BacktestContext) -> Optional[SessionStatus]:
        summary = self.fetch(ctx)
        return summary.current_status if summary else None

    # ── Write ──────────────────────────────────────────────────────────

    def update(self, ctx: BacktestContext, summary: SessionSummary) -> bool:
        try:
            self._store.set(keys.session_key(ctx), json.dumps(summary.to_dict()))
        except StorageError as e:
            logger.error(f"session {ctx.session_id}: update failed — {e}")
            return False
        return True

    def request_pause(self, ctx: BacktestContext, notes: str = "") -> bool:
        ok = self._set_status(ctx, SessionStatus.PAUSED, notes)
        if ok:
            logger.info(f"⏸  session {ctx.session_id} paused  notes={notes!r}")
        return ok

    def request_resume(self, ctx: BacktestContext, notes: str = "") -> bool:
        ok = self._set_status(ctx, SessionStatus.RUNNING, notes)
        if ok:
            logger.info(f"▶  session {ctx.session_id} resumed")
        return ok

    def request_stop(self, ctx: BacktestContext, notes: str = "") -> bool:
        ok = self._set_status(ctx, SessionStatus.STOPPED, notes)
        if ok:
            logger.info(f"⏹  session {ctx.session_id} stop requested  notes={notes!r}")
        return ok

    def _set_status(self, ctx: BacktestContext, status: SessionStatus, notes: str) -> bool:
        summary = self.fetch(ctx) or SessionSummary.for_context(ctx)
        summary.current_status = status
        summary.last_update = now_ms()
        if notes:
            summary.notes = notes
        ok = self.update(ctx, summary)
        self._wakeup(ctx).set()
        return ok

    # ── Pause protocol ─────────────────────────────────────────────────

    def wait_while_paused(
        self,
        ctx: BacktestContext,
        token: Optional[CancellationToken] = None,
        poll_interval: Optional[float] = None,
    ) -> SessionStatus:
        """
        Block while the stored status is paused.

        Returns the status that ended the wait: STOPPED if the stored record
        says so or the token was cancelled, otherwise whatever non-paused
        status was read (an unreadable record counts as RUNNING).
        """
        interval = poll_interval if poll_interval is not None else cfg.PAUSE_POLL_SECONDS
        wake = self._wakeup(ctx)
        if token is not None:
            token.add_callback(wake.set)
        try:
            while True:
                wake.clear()
                if token is not None and token.cancelled:
                    return SessionStatus.STOPPED
                status = self.current_status(ctx) or SessionStatus.RUNNING
                if status != SessionStatus.PAUSED:
                    return status
                wake.wait(interval)
        finally:
            if token is not None:
                token.remove_callback(wake.set)
