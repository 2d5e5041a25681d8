"""
Clock

"Today" is an injected capability, never an ambient call. Lookback
windows and the no-future-points rule both read it from here.
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Optional, Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def today(self) -> date:
        ...


class SystemClock:
    """Wall-clock today in a fixed timezone."""

    def __init__(self, tz: Optional[tzinfo] = None):
        self._tz = tz or timezone.utc

    @classmethod
    def for_zone(cls, name: str) -> "SystemClock":
        if name.upper() == "UTC":
            return cls(timezone.utc)
        return cls(ZoneInfo(name))

    @property
    def tz(self) -> tzinfo:
        return self._tz

    def today(self) -> date:
        return datetime.now(self._tz).date()


class FixedClock:
    """A clock pinned to one day. For tests and replays."""

    def __init__(self, day: date):
        self._day = day

    def today(self) -> date:
        return self._day

    def set(self, day: date) -> None:
        self._day = day
