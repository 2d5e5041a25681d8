"""
Temporal Window Schema

A window is either one calendar day or a closed range of calendar days.
There is no time-of-day anywhere in here. Timestamps are cut down to
their calendar date once, when they enter a window, and never again.
"""

from datetime import date, datetime, timedelta
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..errors import InvalidWindow


def to_calendar_date(value: Any) -> Any:
    """
    Normalize an incoming date-ish value to a calendar date.

    - date: returned as-is
    - datetime: its own wall-clock date (aware values keep their offset,
      so the date is local to the record, not to the server)
    - str: ISO date or ISO timestamp
    - None: passed through

    Anything else is returned untouched for pydantic to reject.
    Unparseable strings raise InvalidWindow.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text).date()
        except ValueError as e:
            raise InvalidWindow(f"Unparseable date: {value!r}") from e
    return value


def lift_window_fields(
    data: Any,
    target: str = "window",
    day_key: str = "date_represented",
    start_key: str = "date_range_start",
    end_key: str = "date_range_end",
    required: bool = True,
) -> Any:
    """
    Fold flat date columns (as rows and forms carry them) into one window field.

    Used as a before-validator by records that own a window. Leaves the
    data alone when the window is already given.
    """
    if not isinstance(data, dict) or data.get(target) is not None:
        return data
    data = dict(data)
    day = data.pop(day_key, None) if day_key else None
    start = data.pop(start_key, None)
    end = data.pop(end_key, None)
    if not required and day is None and start is None and end is None:
        return data
    data[target] = TemporalWindow.from_parts(day=day, start=start, end=end)
    return data


class TemporalWindow(BaseModel):
    """
    Either {day} or {start, end} with start <= end. Never both, never neither.

    Build windows through single(), between() or from_parts(); they raise
    InvalidWindow before anything is constructed.
    """
    model_config = ConfigDict(frozen=True)

    day: Optional[date] = Field(
        default=None,
        description="Single represented date"
    )
    start: Optional[date] = Field(
        default=None,
        description="First day of the range (inclusive)"
    )
    end: Optional[date] = Field(
        default=None,
        description="Last day of the range (inclusive)"
    )

    @field_validator("day", "start", "end", mode="before")
    @classmethod
    def normalize_dates(cls, v: Any) -> Any:
        return to_calendar_date(v)

    @model_validator(mode="after")
    def exactly_one_representation(self) -> "TemporalWindow":
        has_range = self.start is not None or self.end is not None
        if self.day is not None and has_range:
            raise InvalidWindow(
                "Window has both a single date and a range",
                self.day, self.start, self.end,
            )
        if self.day is None:
            if self.start is None or self.end is None:
                raise InvalidWindow(
                    "Window needs a single date or both range ends",
                    self.day, self.start, self.end,
                )
            if self.start > self.end:
                raise InvalidWindow(
                    f"Range start {self.start} is after end {self.end}",
                    self.day, self.start, self.end,
                )
        return self

    # ================================================================
    # CONSTRUCTORS
    # ================================================================

    @classmethod
    def single(cls, day: Any) -> "TemporalWindow":
        parsed = to_calendar_date(day)
        if parsed is None:
            raise InvalidWindow("Single-date window needs a date", day=day)
        return cls(day=parsed)

    @classmethod
    def between(cls, start: Any, end: Any) -> "TemporalWindow":
        first, last = to_calendar_date(start), to_calendar_date(end)
        if first is None or last is None:
            raise InvalidWindow("Range needs both start and end", start=start, end=end)
        if first > last:
            raise InvalidWindow(
                f"Range start {first} is after end {last}", start=start, end=end
            )
        return cls(start=first, end=last)

    @classmethod
    def from_parts(
        cls,
        day: Any = None,
        start: Any = None,
        end: Any = None,
    ) -> "TemporalWindow":
        """
        Build a window from the loose fields records carry.

        A valid range wins over a single date. A broken range with a
        usable single date falls back to the date. With neither usable,
        InvalidWindow is raised.
        """
        parsed_day = to_calendar_date(day)
        first, last = to_calendar_date(start), to_calendar_date(end)

        if first is not None and last is not None and first <= last:
            return cls(start=first, end=last)
        if parsed_day is not None:
            return cls(day=parsed_day)
        if first is not None and last is not None:
            raise InvalidWindow(f"Range start {first} is after end {last}", day, start, end)
        raise InvalidWindow("Neither a single date nor a complete range", day, start, end)

    # ================================================================
    # DERIVED VALUES
    # ================================================================

    @property
    def is_range(self) -> bool:
        return self.day is None

    @property
    def first_day(self) -> date:
        return self.start if self.is_range else self.day

    @property
    def last_day(self) -> date:
        return self.end if self.is_range else self.day

    @property
    def effective_date(self) -> date:
        """The date used for chronological ordering: range end, else the date."""
        return self.last_day

    @property
    def duration_days(self) -> int:
        return (self.last_day - self.first_day).days + 1

    def contains(self, other: "TemporalWindow") -> bool:
        """True when every day of other lies inside this window."""
        return self.first_day <= other.first_day and other.last_day <= self.last_day

    def includes(self, day: date) -> bool:
        return self.first_day <= day <= self.last_day

    def days(self) -> Iterator[date]:
        current = self.first_day
        while current <= self.last_day:
            yield current
            current += timedelta(days=1)

    def __str__(self) -> str:
        if self.is_range:
            return f"{self.start.isoformat()}..{self.end.isoformat()}"
        return self.day.isoformat()
