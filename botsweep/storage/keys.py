"""
Key layout for the shared store.

    bot_run:{ctx}:{hash}             one BacktestRunRecord (JSON)
    session:{ctx}                    one SessionSummary (JSON)
    trades:{ctx}:{hash}              the run's Trade[] (JSON array)
    session_bots:{ctx}               set of every configHash claimed in the session
    session_bots:{ctx}:{status}      same, partitioned by run status
    session_profit:{ctx}             sorted set configHash → profit

{ctx} is "{symbol}:{timeframe}:{startTimestamp}:{endTimestamp}". Symbols may
contain "/" (BTC/USDT) but never ":", so the four fields split cleanly.
"""
from typing import Dict, Union

RUN_PREFIX           = "bot_run"
SESSION_PREFIX       = "session"
TRADES_PREFIX        = "trades"
SESSION_BOTS_PREFIX  = "session_bots"
SESSION_PROFIT_PREFIX = "session_profit"


def format_context_id(symbol: str, timeframe: str, start_timestamp: int, end_timestamp: int) -> str:
    if ":" in symbol or ":" in timeframe:
        raise ValueError(f"symbol/timeframe may not contain ':' ({symbol!r}, {timeframe!r})")
    return f"{symbol}:{timeframe}:{int(start_timestamp)}:{int(end_timestamp)}"


def parse_context_id(session_id: str) -> Dict[str, Union[str, int]]:
    parts = session_id.split(":")
    if len(parts) != 4:
        raise ValueError(f"malformed session id {session_id!r}")
    symbol, timeframe, start, end = parts
    return {
        "symbol":          symbol,
        "timeframe":       timeframe,
        "start_timestamp": int(start),
        "end_timestamp":   int(end),
    }


def _require_hash(ctx) -> str:
    if not ctx.config_hash:
        raise ValueError("context has no config_hash")
    return ctx.config_hash


def run_key(ctx) -> str:
    return f"{RUN_PREFIX}:{ctx.session_id}:{_require_hash(ctx)}"


def trades_key(ctx) -> str:
    return f"{TRADES_PREFIX}:{ctx.session_id}:{_require_hash(ctx)}"


def session_key(ctx) -> str:
    return f"{SESSION_PREFIX}:{ctx.session_id}"


def session_bots_key(ctx, status: str = None) -> str:
    base = f"{SESSION_BOTS_PREFIX}:{ctx.session_id}"
    return f"{base}:{status}" if status else base


def session_profit_key(ctx) -> str:
    return f"{SESSION_PROFIT_PREFIX}:{ctx.session_id}"


def session_scan_pattern() -> str:
    return f"{SESSION_PREFIX}:*"


def session_id_from_key(key: str) -> str:
    """session:BTC/USDT:1h:1:2 → BTC/USDT:1h:1:2"""
    prefix = f"{SESSION_PREFIX}:"
    if not key.startswith(prefix):
        raise ValueError(f"not a session key: {key!r}")
    return key[len(prefix):]
