"""
Session Command Relay — pause / resume / stop a running sweep from a shell.

The orchestrator re-reads session:{id} between runs (and every
PAUSE_POLL_SECONDS while paused), so a command lands within one run.

Usage (from Python):
    from scripts.session_command import relay_command
    relay_command("BTC/USDT:1h:1704067200000:1709251200000", "pause", notes="data refresh")

Usage (CLI):
    python scripts/session_command.py list
    python scripts/session_command.py status <session_id>
    python scripts/session_command.py pause  <session_id> [notes]
    python scripts/session_command.py resume <session_id> [notes]
    python scripts/session_command.py stop   <session_id> [notes]
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from botsweep.execution.run_queries import RunQueries
from botsweep.execution.session_control import SessionController
from botsweep.models import BacktestContext, SessionStatus
from botsweep.storage.kv_store import RedisStore

_STATUS_EMOJI = {
    SessionStatus.RUNNING:   "🟢",
    SessionStatus.PAUSED:    "⏸",
    SessionStatus.COMPLETED: "✅",
    SessionStatus.FAILED:    "❌",
    SessionStatus.STOPPED:   "⏹",
}


def relay_command(session_id: str, command: str, notes: str = "", store=None) -> bool:
    """Write a control status for a session. Returns False if the write failed."""
    ctrl = SessionController(store or RedisStore.from_url())
    ctx = BacktestContext.from_session_id(session_id)
    actions = {
        "pause":  ctrl.request_pause,
        "resume": ctrl.request_resume,
        "stop":   ctrl.request_stop,
    }
    if command not in actions:
        raise ValueError(f"unknown command {command!r}")
    ok = actions[command](ctx, notes=notes)
    print(f"{'✅' if ok else '⚠️'} {command} → {session_id}" + ("" if ok else " (store write failed)"))
    return ok


def _fmt_ms(ms: int) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def status_summary(session_id: str, store=None) -> str:
    """Human-readable status for one session."""
    queries = RunQueries(store or RedisStore.from_url())
    ctx = BacktestContext.from_session_id(session_id)
    s = queries.get_session(ctx)
    if s is None:
        return f"⚠️ No session {session_id}"
    stats = queries.aggregate_stats(ctx)
    lines = [
        f"{_STATUS_EMOJI.get(s.current_status, '❓')} {session_id}: {s.current_status.value.upper()}"
        + ("" if s.active else " (inactive)"),
        f"Runs: {s.run_count} | completed: {s.completed_runs} | errors: {s.error_count}",
        f"Best: {s.best_profit:+.2f} ({s.best_config_hash[:8] or '-'}) | Avg: {s.avg_profit:+.2f}",
        f"Stored bots: {stats['totalBots']} (running {stats['runningBots']}, failed {stats['failedBots']})",
        f"Last update: {_fmt_ms(s.last_update)}",
    ]
    if s.notes:
        lines.append(f"Notes: {s.notes}")
    return "\n".join(lines)


def list_summary(store=None) -> str:
    queries = RunQueries(store or RedisStore.from_url())
    sessions = queries.list_sessions()
    if not sessions:
        return "No sessions"
    return "\n".join(
        f"{_STATUS_EMOJI.get(s.current_status, '❓')} {s.context.session_id}  "
        f"runs={s.run_count}  best={s.best_profit:+.2f}  updated={_fmt_ms(s.last_update)}"
        for s in sessions
    )


if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1].lower() == "list":
        print(list_summary())
        sys.exit(0)

    cmd = sys.argv[1].lower()
    if len(sys.argv) < 3:
        print("Usage: python session_command.py [list|status|pause|resume|stop] <session_id> [notes]")
        sys.exit(2)
    session_id = sys.argv[2]
    notes = sys.argv[3] if len(sys.argv) > 3 else ""

    if cmd == "status":
        print(status_summary(session_id))
    elif cmd in ("pause", "resume", "stop"):
        sys.exit(0 if relay_command(session_id, cmd, notes=notes) else 1)
    else:
        print(f"Unknown command: {cmd}")
        print("Usage: python session_command.py [list|status|pause|resume|stop] <session_id> [notes]")
        sys.exit(2)
