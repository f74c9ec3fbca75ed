"""
sweep_config.py — Single Source of Truth for Sweep Tunables
===========================================================

THIS IS THE ONLY PLACE THESE CONSTANTS ARE DEFINED.

The orchestrator, the run registry, the session controller and the reference
paper engine all read from here. Modules import this file BY REFERENCE
(``from .. import sweep_config as cfg``) and read ``cfg.NAME`` at call time,
so a runtime override is seen everywhere without a reload.

OVERRIDES
=========
Every constant is a named override. To run a one-off campaign without editing
source code, pass --set on the orchestrator CLI:

    python -m botsweep.execution.orchestrator --symbol BTC/USDT --timeframe 1h \\
        --start 2024-01-01 --end 2024-03-01 \\
        --set PAUSE_POLL_SECONDS=5 --set MAX_DEDUP_ATTEMPTS=20

apply_overrides(overrides) patches module globals at runtime.

Environment
===========
The repo-root .env is loaded with python-dotenv. Environment variables win
over the defaults below:
    REDIS_URL        redis connection string for the shared store
    SWEEP_LOG_DIR    directory for orchestrator log files
    SWEEP_DATA_DIR   directory of <SYMBOL>_<timeframe>.csv candle files
"""
import os
import sys as _sys
from pathlib import Path

from dotenv import load_dotenv

_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env")

# ── Shared store ───────────────────────────────────────────────────────────
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Socket timeouts for the redis client. Short on purpose: a stalled store
# must degrade to "unknown" quickly instead of stalling the campaign.
REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0

# Batch hint passed to SCAN. Scans always drain fully; this only sizes pages.
SCAN_BATCH_SIZE: int = 100

# ── Filesystem ─────────────────────────────────────────────────────────────
LOG_DIR: Path = Path(os.getenv("SWEEP_LOG_DIR", str(_ROOT / "logs")))
DATA_DIR: Path = Path(os.getenv("SWEEP_DATA_DIR", str(_ROOT / "data")))

# ── Deduplication ──────────────────────────────────────────────────────────
# Fresh random configurations generated per iteration before giving up.
# A configuration counts as "used" once any run record exists for its hash.
MAX_DEDUP_ATTEMPTS: int = 10

# More skipped iterations in a row than this and the campaign is considered
# exhausted and closed as completed.
MAX_CONSECUTIVE_SKIPS: int = 25

# TTL on the transient "running" claim. A crashed worker's claim expires
# after this and the configuration becomes retryable.
RUN_CLAIM_TTL_SECONDS: int = 24 * 3600

# ── Session control ────────────────────────────────────────────────────────
# Re-read interval while a session is paused.
PAUSE_POLL_SECONDS: float = 2.0

# ── Simulation ─────────────────────────────────────────────────────────────
INITIAL_BALANCE: float = 10_000.0

# Reference paper engine fees, charged into realized PnL on every fill.
TAKER_FEE_RATE: float = 0.0005   # market orders
MAKER_FEE_RATE: float = 0.0002   # resting limit orders

# ── Read-side paging ───────────────────────────────────────────────────────
RUN_PAGE_LIMIT_DEFAULT: int = 50
RUN_PAGE_LIMIT_MAX: int = 100


def apply_overrides(overrides: dict) -> dict:
    """
    Patch module-level constants at runtime.

    Values are coerced to the type of the constant they replace. Boolean
    strings must be one of true/false/1/0/yes/no/on/off (any case).

    Returns the dict of applied overrides.
    Raises ValueError for unknown keys, non-overridable keys and boolean
    strings outside that set.

    Example:
        apply_overrides({"MAX_DEDUP_ATTEMPTS": 20, "PAUSE_POLL_SECONDS": "0.5"})
    """
    m = _sys.modules[__name__]
    applied = {}
    for key, raw_val in overrides.items():
        if key.startswith("_") or not key.isupper():
            raise ValueError(f"apply_overrides: '{key}' is not an override")
        if not hasattr(m, key):
            raise ValueError(f"apply_overrides: unknown override '{key}'")
        existing = getattr(m, key)
        if callable(existing):
            raise ValueError(f"apply_overrides: '{key}' is a function, not an override")
        if isinstance(existing, bool):
            if isinstance(raw_val, str):
                word = raw_val.strip().lower()
                if word in ("true", "1", "yes", "on"):
                    val = True
                elif word in ("false", "0", "no", "off"):
                    val = False
                else:
                    raise ValueError(f"apply_overrides: '{key}' needs a boolean, got {raw_val!r}")
            else:
                val = bool(raw_val)
        elif isinstance(existing, float):
            val = float(raw_val)
        elif isinstance(existing, int):
            val = int(raw_val)
        elif isinstance(existing, Path):
            val = Path(raw_val)
        elif isinstance(existing, str):
            val = str(raw_val)
        else:
            val = raw_val
        setattr(m, key, val)
        applied[key] = val
    return applied


def parse_override_args(pairs: list) -> dict:
    """Turn ["KEY=VALUE", ...] from the CLI into a dict for apply_overrides()."""
    overrides = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"override must look like KEY=VALUE, got {pair!r}")
        key, value = pair.split("=", 1)
        overrides[key.strip()] = value.strip()
    return overrides
