"""
Historical candle source — local CSV files

One file per symbol/timeframe under DATA_DIR:
    BTC-USDT_1h.csv      ("/" in the symbol becomes "-")

Columns: timestamp, open, high, low, close, volume. timestamp may be epoch
milliseconds or anything pandas can parse as a datetime (taken as UTC).

fetch_candles() returns an ordered frame with an int64 ms `timestamp` column,
clipped to [start, end]. Missing file or no rows in range → empty frame;
the orchestrator decides that is fatal.
"""
import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

import pandas as pd

from .. import sweep_config as cfg

logger = logging.getLogger(__name__)

CANDLE_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


def _empty() -> pd.DataFrame:
    return pd.DataFrame(columns=CANDLE_COLUMNS)


def _to_epoch_ms(col: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(col):
        return col.astype("int64")
    parsed = pd.to_datetime(col, utc=True)
    return (parsed - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)


def normalize_candles(df: pd.DataFrame, start: Optional[int] = None, end: Optional[int] = None) -> pd.DataFrame:
    """Lower-case columns, ms timestamps, sorted, de-duplicated, clipped to [start, end]."""
    if df is None or df.empty:
        return _empty()
    df = df.rename(columns=str.lower)
    missing = [c for c in CANDLE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"candle data missing columns: {missing}")
    df = df[CANDLE_COLUMNS].copy()
    df["timestamp"] = _to_epoch_ms(df["timestamp"])
    for c in ("open", "high", "low", "close", "volume"):
        df[c] = pd.to_numeric(df[c], errors="coerce")
    df = df.dropna(subset=["open", "high", "low", "close"])
    if start is not None:
        df = df[df["timestamp"] >= int(start)]
    if end is not None:
        df = df[df["timestamp"] <= int(end)]
    df = df.sort_values("timestamp", kind="stable").drop_duplicates("timestamp", keep="last")
    return df.reset_index(drop=True)


def candles_from_rows(rows: Iterable[Sequence[float]]) -> pd.DataFrame:
    """[[ts, o, h, l, c, v], …] → normalized frame. Handy for tests and API payloads."""
    rows = list(rows)
    if not rows:
        return _empty()
    return normalize_candles(pd.DataFrame(rows, columns=CANDLE_COLUMNS))


class CsvCandleSource:
    """Reads <SYMBOL>_<timeframe>.csv from a data directory."""

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else cfg.DATA_DIR

    def path_for(self, symbol: str, timeframe: str) -> Path:
        return self.data_dir / f"{symbol.replace('/', '-')}_{timeframe}.csv"

    def fetch_candles(self, symbol: str, timeframe: str, start: int, end: int) -> pd.DataFrame:
        path = self.path_for(symbol, timeframe)
        if not path.exists():
            logger.warning(f"No candle file for {symbol} {timeframe}: {path}")
            return _empty()
        try:
            raw = pd.read_csv(path)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            logger.error(f"Failed to read {path}: {e}")
            return _empty()
        df = normalize_candles(raw, start, end)
        logger.info(f"📈 {symbol} {timeframe}: {len(df)} candles from {path.name}")
        return df
