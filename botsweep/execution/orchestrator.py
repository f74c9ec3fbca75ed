"""
Sweep Orchestrator — The main loop.

Per iteration:
    → Generate a random configuration, fingerprint it, skip it if any run
      record already exists (up to MAX_DEDUP_ATTEMPTS tries, then skip the
      iteration)
    → Build the engine + evaluator, then claim the configuration (SET NX)
    → Replay every candle: update → limit fills (low/buy, high/sell) →
      evaluator → position snapshot → trade detector
    → Flush the open trade at the last candle, compute performance
    → Persist run record (durable) + trade list, update session aggregates
    → Read the stored session status: paused → block until resumed,
      stopped → exit

A session already paused when run() starts stays paused: the first write
keeps 'paused' and nothing runs until it is resumed.

Loop exit:
    cancel token / stored 'stopped'        → stopped
    max_runs reached                       → completed
    > MAX_CONSECUTIVE_SKIPS skips in a row → completed (space exhausted)
    unexpected exception                   → failed (notes = error), re-raised
  One final session write with active=False in every case.

Fatal before anything is written:
    zero candles                → NoCandleDataError
    engine/evaluator factory    → EngineConstructionError

Usage:
    python -m botsweep.execution.orchestrator --symbol BTC/USDT --timeframe 1h \\
        --start 2024-01-01 --end 2024-03-01 --max-runs 200
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from .. import sweep_config as cfg
from ..errors import EngineConstructionError, NoCandleDataError
from ..models import (
    BacktestContext, PerformanceResult, RunStatus, SessionStatus, SessionSummary, Trade,
)
from ..storage.kv_store import KeyValueStore
from .fingerprint import fingerprint
from .performance import calculate_performance, market_history, results_metadata
from .run_registry import RunRegistry
from .session_control import CancellationToken, SessionAccumulator, SessionController
from .trade_detector import TradeLifecycleDetector

logger = logging.getLogger(__name__)


@dataclass
class _Claim:
    ctx: BacktestContext          # with config_hash
    bot_id: str
    configuration: Dict[str, Any]
    engine: Any
    evaluator: Any
    claimed: bool                 # False → store degraded, running unclaimed


class RunOrchestrator:
    """
    Drives one session (context) through many runs.

    bot_factory must provide:
        build_engine(configuration, initial_balance)   → engine
        build_evaluator(engine, bot_id, configuration) → evaluator
        precompute_patterns(candles, configuration)    → per-row sequence or None
    """

    def __init__(
        self,
        store: KeyValueStore,
        candle_source,
        generate_config: Callable[[], Dict[str, Any]],
        bot_factory,
        initial_balance: Optional[float] = None,
        registry: Optional[RunRegistry] = None,
        sessions: Optional[SessionController] = None,
        max_dedup_attempts: Optional[int] = None,
        max_consecutive_skips: Optional[int] = None,
        pause_poll_seconds: Optional[float] = None,
        bot_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.candle_source   = candle_source
        self.generate_config = generate_config
        self.bot_factory     = bot_factory
        self.registry        = registry or RunRegistry(store)
        self.sessions        = sessions or SessionController(store)
        self.initial_balance = initial_balance if initial_balance is not None else cfg.INITIAL_BALANCE
        self.max_dedup_attempts    = max_dedup_attempts if max_dedup_attempts is not None else cfg.MAX_DEDUP_ATTEMPTS
        self.max_consecutive_skips = max_consecutive_skips if max_consecutive_skips is not None else cfg.MAX_CONSECUTIVE_SKIPS
        self.pause_poll_seconds    = pause_poll_seconds if pause_poll_seconds is not None else cfg.PAUSE_POLL_SECONDS
        self._new_bot_id = bot_id_factory or (lambda: f"bot-{uuid.uuid4().hex[:12]}")

    # ── Public ─────────────────────────────────────────────────────────

    def run(
        self,
        context: BacktestContext,
        cancel_token: Optional[CancellationToken] = None,
        max_runs: Optional[int] = None,
    ) -> SessionSummary:
        ctx = context.without_config()
        token = cancel_token or CancellationToken()

        candles = self._load_candles(ctx)
        history = market_history(candles)

        acc = SessionAccumulator.from_summary(self.sessions.fetch(ctx))
        if acc.run_count:
            logger.info(f"↻ resuming session {ctx.session_id} at run {acc.run_count}")
        # A pause set before this worker started holds until someone resumes it.
        paused_at_start = self.sessions.current_status(ctx) == SessionStatus.PAUSED
        start_status = SessionStatus.PAUSED if paused_at_start else SessionStatus.RUNNING
        if not self.sessions.update(ctx, acc.to_summary(ctx, start_status, active=True)):
            acc.record_error()

        final_status = SessionStatus.COMPLETED
        notes = ""
        runs_done = 0
        skips_in_row = 0

        try:
            if paused_at_start:
                logger.info(f"⏸  {ctx.session_id}: paused before start — waiting")
                resumed = self.sessions.wait_while_paused(ctx, token, self.pause_poll_seconds)
                if resumed == SessionStatus.STOPPED:
                    final_status = SessionStatus.STOPPED
                    notes = token.reason if token.cancelled else "stop requested"
                else:
                    logger.info(f"▶  {ctx.session_id}: resumed")

            while final_status != SessionStatus.STOPPED:
                if token.cancelled:
                    final_status, notes = SessionStatus.STOPPED, token.reason or "cancelled"
                    logger.info(f"⏹  {ctx.session_id}: cancelled — {notes}")
                    break
                if max_runs is not None and runs_done >= max_runs:
                    notes = f"max runs reached ({max_runs})"
                    break

                perf = self.run_once(ctx, candles, history, acc)
                if perf is None:
                    skips_in_row += 1
                    if skips_in_row > self.max_consecutive_skips:
                        notes = f"configuration space exhausted ({skips_in_row} skips in a row)"
                        logger.info(f"✅ {ctx.session_id}: {notes}")
                        break
                else:
                    skips_in_row = 0
                    runs_done += 1

                # An outside actor may have paused or stopped us mid-run.
                stored = self.sessions.current_status(ctx)
                if stored == SessionStatus.STOPPED:
                    final_status, notes = SessionStatus.STOPPED, "stop requested"
                    break
                status = SessionStatus.PAUSED if stored == SessionStatus.PAUSED else SessionStatus.RUNNING
                if not self.sessions.update(ctx, acc.to_summary(ctx, status, active=True)):
                    acc.record_error()

                if status == SessionStatus.PAUSED:
                    logger.info(f"⏸  {ctx.session_id}: paused — waiting")
                    resumed = self.sessions.wait_while_paused(ctx, token, self.pause_poll_seconds)
                    if resumed == SessionStatus.STOPPED:
                        final_status = SessionStatus.STOPPED
                        notes = token.reason if token.cancelled else "stop requested"
                        break
                    logger.info(f"▶  {ctx.session_id}: resumed")

        except Exception as e:
            logger.error(f"❌ {ctx.session_id}: sweep aborted — {e}", exc_info=True)
            try:
                self.sessions.update(
                    ctx, acc.to_summary(ctx, SessionStatus.FAILED, active=False, notes=str(e))
                )
            except Exception as write_err:
                logger.error(f"could not mark session failed: {write_err}")
            raise

        summary = acc.to_summary(ctx, final_status, active=False, notes=notes)
        if not self.sessions.update(ctx, summary):
            summary.error_count += 1
        logger.info(
            f"🏁 {ctx.session_id}: {final_status.value} | runs={summary.run_count} "
            f"best={summary.best_profit:+.2f} avg={summary.avg_profit:+.2f} errors={summary.error_count}"
        )
        return summary

    def run_once(
        self,
        ctx: BacktestContext,
        candles: pd.DataFrame,
        history,
        acc: SessionAccumulator,
    ) -> Optional[PerformanceResult]:
        """One iteration. None when no unique configuration could be found."""
        claim = self._claim_unique_config(ctx)
        if claim is None:
            acc.record_skip()
            logger.warning(
                f"⚠️  {ctx.session_id}: no unique configuration after "
                f"{self.max_dedup_attempts} attempts — skipping iteration"
            )
            return None
        if not claim.claimed:
            acc.record_error()

        try:
            trades, final_balance = self._simulate(claim, candles)
        except Exception as e:
            try:
                self.registry.record_completion(
                    claim.ctx, claim.bot_id, RunStatus.FAILED, claim.configuration,
                    {"error": str(e)},
                )
            except Exception as write_err:
                logger.error(f"could not mark run {claim.ctx.config_hash[:8]} failed: {write_err}")
            raise

        perf = calculate_performance(trades, self.initial_balance, final_balance)
        meta = results_metadata(perf, history)

        persisted = self.registry.record_completion(
            claim.ctx, claim.bot_id, RunStatus.COMPLETED, claim.configuration, meta
        )
        if not self.registry.record_trades(claim.ctx, trades):
            acc.record_error()
        acc.record_run(claim.ctx.config_hash, perf.profit, persisted=persisted)

        logger.info(
            f"run #{acc.run_count} {claim.ctx.config_hash[:8]} ({claim.bot_id}) "
            f"profit={perf.profit:+.2f} trades={perf.num_trades} win={perf.win_rate:.0%} "
            f"sharpe={perf.sharpe_ratio:.2f} dd={perf.max_drawdown:.1%}"
        )
        return perf

    # ── Internals ──────────────────────────────────────────────────────

    def _load_candles(self, ctx: BacktestContext) -> pd.DataFrame:
        candles = self.candle_source.fetch_candles(
            ctx.symbol, ctx.timeframe, ctx.start_timestamp, ctx.end_timestamp
        )
        if candles is None or len(candles) == 0:
            raise NoCandleDataError(f"no candles for {ctx.session_id}")
        return candles.reset_index(drop=True)

    def _claim_unique_config(self, ctx: BacktestContext) -> Optional[_Claim]:
        for attempt in range(1, self.max_dedup_attempts + 1):
            configuration = self.generate_config()
            run_ctx = ctx.with_config(fingerprint(configuration))

            if self.registry.check_status(run_ctx) != RunStatus.NOT_FOUND:
                logger.debug(f"attempt {attempt}: {run_ctx.config_hash[:8]} already used")
                continue

            bot_id = self._new_bot_id()
            configuration = {**configuration, "botId": bot_id}
            engine, evaluator = self._build_bot(bot_id, configuration)

            if self.registry.record_start(run_ctx, bot_id):
                return _Claim(run_ctx, bot_id, configuration, engine, evaluator, claimed=True)

            # Lost the claim to another worker, or the store is down.
            if self.registry.check_status(run_ctx) == RunStatus.NOT_FOUND:
                logger.warning(f"claim for {run_ctx.config_hash[:8]} not recorded — store degraded, running unclaimed")
                return _Claim(run_ctx, bot_id, configuration, engine, evaluator, claimed=False)
            logger.debug(f"attempt {attempt}: lost claim race for {run_ctx.config_hash[:8]}")
        return None

    def _build_bot(self, bot_id: str, configuration: Dict[str, Any]) -> Tuple[Any, Any]:
        try:
            engine = self.bot_factory.build_engine(configuration, self.initial_balance)
            evaluator = self.bot_factory.build_evaluator(engine, bot_id, configuration)
        except Exception as e:
            raise EngineConstructionError(f"could not build bot {bot_id}: {e}") from e
        return engine, evaluator

    def _simulate(self, claim: _Claim, candles: pd.DataFrame) -> Tuple[List[Trade], float]:
        engine, evaluator, bot_id = claim.engine, claim.evaluator, claim.bot_id
        patterns = self.bot_factory.precompute_patterns(candles, claim.configuration)
        detector = TradeLifecycleDetector(bot_id)
        fills = 0

        ts, close = 0, 0.0
        for i, row in enumerate(candles.itertuples(index=False)):
            ts, close = int(row.timestamp), float(row.close)
            engine.update(ts, close)
            engine.check_limit_order_fills_against_price(float(row.low), ts, "buy")
            engine.check_limit_order_fills_against_price(float(row.high), ts, "sell")
            evaluator.evaluate_signals_and_trade(ts, close, patterns[i] if patterns is not None else None)
            fills += len(engine.drain_fill_events() or [])
            detector.observe(ts, close, engine.get_position(bot_id))

        detector.flush(ts, close, engine.get_position(bot_id))
        final_balance = float(engine.get_quote_balance(bot_id))
        logger.debug(f"{bot_id}: {len(candles)} candles, {fills} fills, {len(detector.trades)} trades")
        return detector.trades, final_balance


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def _parse_timestamp(value: str) -> int:
    """Epoch ms, or any date pandas understands (UTC)."""
    if value.isdigit():
        return int(value)
    ts = pd.Timestamp(value)
    ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return int(ts.value // 1_000_000)


if __name__ == "__main__":
    import argparse
    import signal
    import sys

    from ..errors import SweepError
    from ..market.candles import CsvCandleSource
    from ..storage.kv_store import MemoryStore, RedisStore
    from ..strategy.config_generator import ConfigGenerator
    from ..strategy.momentum import MomentumBotFactory

    parser = argparse.ArgumentParser(description="Backtest configuration sweep")
    parser.add_argument("--symbol", required=True, help="e.g. BTC/USDT")
    parser.add_argument("--timeframe", required=True, help="e.g. 1h")
    parser.add_argument("--start", required=True, help="epoch ms or date")
    parser.add_argument("--end", required=True, help="epoch ms or date")
    parser.add_argument("--data-dir", default=None, help="directory of <SYMBOL>_<tf>.csv files")
    parser.add_argument("--redis-url", default=None, help="defaults to REDIS_URL")
    parser.add_argument("--memory", action="store_true",
                        help="in-process store; nothing is shared or kept")
    parser.add_argument("--max-runs", type=int, default=None)
    parser.add_argument("--initial-balance", type=float, default=None)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--set", action="append", default=[], metavar="KEY=VALUE",
                        help="override a sweep_config constant (repeatable)")
    args = parser.parse_args()

    applied = cfg.apply_overrides(cfg.parse_override_args(args.set))

    cfg.LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(cfg.LOG_DIR / "sweep_orchestrator.log"),
            logging.StreamHandler(),
        ],
    )
    if applied:
        logger.info(f"overrides: {applied}")

    if args.memory:
        store = MemoryStore()
    else:
        store = RedisStore.from_url(args.redis_url)
        if not store.ping():
            logger.warning("redis not reachable — continuing, writes will be counted as errors")

    context = BacktestContext(
        args.symbol, args.timeframe, _parse_timestamp(args.start), _parse_timestamp(args.end)
    )
    token = CancellationToken()

    def _on_signal(signum, _frame):
        token.cancel(f"signal {signal.Signals(signum).name}")

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    orchestrator = RunOrchestrator(
        store=store,
        candle_source=CsvCandleSource(args.data_dir),
        generate_config=ConfigGenerator(args.symbol, args.timeframe, seed=args.seed),
        bot_factory=MomentumBotFactory(),
        initial_balance=args.initial_balance,
    )
    try:
        orchestrator.run(context, token, max_runs=args.max_runs)
    except SweepError as e:
        logger.error(f"sweep failed: {e}")
        sys.exit(1)
