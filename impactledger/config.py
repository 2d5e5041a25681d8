"""
Engine Configuration

Environment Variables:
    IMPACTLEDGER_DEFAULT_LOOKBACK: Lookback when no window is given (default 1M)
    IMPACTLEDGER_TIMEZONE: Zone that decides "today" (default UTC)
    IMPACTLEDGER_MAX_SERIES_POINTS: Downsample series longer than this (default 60)
    IMPACTLEDGER_DOWNSAMPLE_STRIDE: Keep every Nth point when downsampling (default 7)
    IMPACTLEDGER_TICK_COUNT: Evenly spaced axis ticks (default 5)
"""

import os
from dataclasses import dataclass

from .core.aggregator import ClaimAggregator, Lookback, parse_lookback
from .core.clock import SystemClock


@dataclass
class EngineConfig:
    """Tunables for aggregation and presentation."""
    default_lookback: str = Lookback.ONE_MONTH.value
    timezone: str = "UTC"
    max_series_points: int = 60
    downsample_stride: int = 7
    tick_count: int = 5

    def __post_init__(self):
        parse_lookback(self.default_lookback)
        if self.max_series_points < 2:
            raise ValueError("max_series_points must be at least 2")
        if self.downsample_stride < 1:
            raise ValueError("downsample_stride must be at least 1")
        if self.tick_count < 2:
            raise ValueError("tick_count must be at least 2")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        return cls(
            default_lookback=os.getenv("IMPACTLEDGER_DEFAULT_LOOKBACK", Lookback.ONE_MONTH.value),
            timezone=os.getenv("IMPACTLEDGER_TIMEZONE", "UTC"),
            max_series_points=int(os.getenv("IMPACTLEDGER_MAX_SERIES_POINTS", "60")),
            downsample_stride=int(os.getenv("IMPACTLEDGER_DOWNSAMPLE_STRIDE", "7")),
            tick_count=int(os.getenv("IMPACTLEDGER_TICK_COUNT", "5")),
        )

    def clock(self) -> SystemClock:
        return SystemClock.for_zone(self.timezone)

    def aggregator(self) -> ClaimAggregator:
        return ClaimAggregator(clock=self.clock(), default_lookback=self.default_lookback)
