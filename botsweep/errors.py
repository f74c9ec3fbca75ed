"""
Fatal errors raised to the caller of the sweep.

Everything recoverable (storage hiccups, dedup exhaustion) is handled where it
happens and never shows up here. These are the cases that end a campaign.
"""


class SweepError(Exception):
    """Base class for errors that abort a sweep."""


class NoCandleDataError(SweepError):
    """The historical data source returned zero candles for the context."""


class EngineConstructionError(SweepError):
    """The simulation engine or signal evaluator could not be built."""
