"""
Claim Aggregator

Turns raw impact claims into per-metric totals and daily cumulative
series for dashboards.

The work is split in two stages:
1. prepare(): validate, partition by metric, sort, and cut to the display
   window. This is done once.
2. totals_for() / series_for() / monthly_for(): pure functions over the
   prepared claims. None of them mutates anything, so calling aggregate()
   twice with the same inputs gives the same answer.

Series are cumulative-to-date: a claim counts in full from its effective
date onward. A ranged claim is not smeared across its range.

One malformed record never sinks a dashboard. It is dropped from the
aggregate and reported in `rejected`.
"""

import calendar
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Optional, Union
from uuid import UUID

from pydantic import ValidationError

from ..errors import InvalidValue, InvalidWindow
from ..observability import get_logger
from ..schemas import ImpactClaim, Metric, MetricCategory, TemporalWindow
from .clock import Clock, SystemClock
from .temporal import sort_key

logger = get_logger(__name__)

ZERO = Decimal(0)

# Start of the "MAX" lookback
MAX_LOOKBACK_START = date(2020, 1, 1)


class Lookback(str, Enum):
    """Named lookback periods, anchored at today."""
    ONE_MONTH = "1M"
    SIX_MONTHS = "6M"
    ONE_YEAR = "1Y"
    FIVE_YEARS = "5Y"
    TEN_YEARS = "10Y"
    MAX = "MAX"


_LOOKBACK_MONTHS = {
    Lookback.ONE_MONTH: 1,
    Lookback.SIX_MONTHS: 6,
    Lookback.ONE_YEAR: 12,
    Lookback.FIVE_YEARS: 60,
    Lookback.TEN_YEARS: 120,
}

LookbackSpec = Union[Lookback, str, int]


def shift_months(day: date, months: int) -> date:
    """Move a date by whole months, clamping to the last valid day."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def parse_lookback(value: LookbackSpec) -> Union[Lookback, int]:
    """Accept a Lookback, its code ('6M'), or a number of days."""
    if isinstance(value, Lookback):
        return value
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if text.isdigit():
        return int(text)
    if text.endswith("D") and text[:-1].isdigit():
        return int(text[:-1])
    return Lookback(text)


def lookback_window(lookback: LookbackSpec, today: date) -> TemporalWindow:
    """
    The display window for a lookback, ending today.

    An integer N means the last N days, today included.
    """
    parsed = parse_lookback(lookback)
    if isinstance(parsed, int):
        if parsed < 1:
            raise InvalidWindow(f"Lookback must cover at least one day, got {parsed}")
        return TemporalWindow.between(today - timedelta(days=parsed - 1), today)
    if parsed == Lookback.MAX:
        return TemporalWindow.between(min(MAX_LOOKBACK_START, today), today)
    return TemporalWindow.between(shift_months(today, -_LOOKBACK_MONTHS[parsed]), today)


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class AggregationFilters:
    """
    What to aggregate.

    An explicit window wins over the lookback. metric_ids also guarantees
    an entry (possibly empty) for every listed metric.
    """
    metric_ids: Optional[set[UUID]] = None
    location_ids: Optional[set[UUID]] = None
    window: Optional[TemporalWindow] = None
    lookback: Optional[LookbackSpec] = None


@dataclass(frozen=True)
class DailyPoint:
    day: date
    value: Decimal


@dataclass(frozen=True)
class MonthlyPoint:
    month: date  # first day of the month
    value: Decimal


@dataclass(frozen=True)
class RejectedRecord:
    """A record left out of an aggregate, with the reason."""
    record: Any
    reason: str


@dataclass
class PreparedClaims:
    """Claims validated, partitioned by metric, sorted and windowed."""
    window: TemporalWindow
    today: date
    by_metric: dict[UUID, list[ImpactClaim]]
    rejected: list[RejectedRecord] = field(default_factory=list)

    @property
    def last_emitted_day(self) -> date:
        """Last day a series may show: window end, but never past today."""
        return min(self.window.last_day, self.today)


@dataclass
class AggregationResult:
    window: TemporalWindow
    totals: dict[UUID, Decimal]
    series: dict[UUID, list[DailyPoint]]
    rejected: list[RejectedRecord] = field(default_factory=list)

    def total_for(self, metric_id: UUID) -> Decimal:
        return self.totals.get(metric_id, ZERO)


# ============================================================
# PURE DERIVATIONS
# ============================================================

def coerce_claims(records: Iterable[Any]) -> tuple[list[ImpactClaim], list[RejectedRecord]]:
    """Validate raw records into claims. Bad records are collected, not raised."""
    claims: list[ImpactClaim] = []
    rejected: list[RejectedRecord] = []
    for record in records:
        if isinstance(record, ImpactClaim):
            claims.append(record)
            continue
        try:
            claims.append(ImpactClaim.model_validate(record))
        except (InvalidWindow, InvalidValue, ValidationError) as e:
            reason = f"{type(e).__name__}: {e}"
            record_id = record.get("id") if isinstance(record, dict) else None
            logger.warning(
                "Claim excluded from aggregation",
                record_id=str(record_id) if record_id else None,
                reason=reason,
            )
            rejected.append(RejectedRecord(record=record, reason=reason))
    return claims, rejected


def totals_for(prepared: PreparedClaims) -> dict[UUID, Decimal]:
    """Sum of surviving claim values per metric."""
    return {
        metric_id: sum((c.value for c in claims), ZERO)
        for metric_id, claims in prepared.by_metric.items()
    }


def series_for(prepared: PreparedClaims) -> dict[UUID, list[DailyPoint]]:
    """
    Daily cumulative series per metric.

    Day d carries the sum of every surviving claim with effective date <= d.
    Days after today are never emitted.
    """
    last_day = prepared.last_emitted_day
    series: dict[UUID, list[DailyPoint]] = {}
    for metric_id, claims in prepared.by_metric.items():
        points: list[DailyPoint] = []
        if claims:
            running = ZERO
            index = 0
            day = prepared.window.first_day
            while day <= last_day:
                while index < len(claims) and claims[index].effective_date <= day:
                    running += claims[index].value
                    index += 1
                points.append(DailyPoint(day=day, value=running))
                day += timedelta(days=1)
        series[metric_id] = points
    return series


def monthly_for(prepared: PreparedClaims) -> dict[UUID, list[MonthlyPoint]]:
    """
    Non-cumulative monthly totals per metric, keyed by effective-date month.

    Covers every month from the window's first month to the last emitted
    day's month, zero-filled.
    """
    last_day = prepared.last_emitted_day
    months: list[date] = []
    month = prepared.window.first_day.replace(day=1)
    while month <= last_day:
        months.append(month)
        month = shift_months(month, 1)

    result: dict[UUID, list[MonthlyPoint]] = {}
    for metric_id, claims in prepared.by_metric.items():
        if not claims:
            result[metric_id] = []
            continue
        buckets: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for claim in claims:
            buckets[claim.effective_date.replace(day=1)] += claim.value
        result[metric_id] = [MonthlyPoint(month=m, value=buckets[m]) for m in months]
    return result


def category_breakdown(metrics: Iterable[Metric]) -> dict[MetricCategory, int]:
    """Metric count per category, empty categories left out."""
    counts: dict[MetricCategory, int] = {}
    for metric in metrics:
        counts[metric.category] = counts.get(metric.category, 0) + 1
    return {category: counts[category] for category in MetricCategory if category in counts}


# ============================================================
# AGGREGATOR
# ============================================================

class ClaimAggregator:
    """
    Read-only aggregation over a claim list.

    Holds only its clock and default lookback; no state survives a call.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        default_lookback: LookbackSpec = Lookback.ONE_MONTH,
    ):
        self._clock = clock or SystemClock()
        self._default_lookback = default_lookback

    @property
    def clock(self) -> Clock:
        return self._clock

    def display_window(self, filters: Optional[AggregationFilters] = None) -> TemporalWindow:
        filters = filters or AggregationFilters()
        if filters.window is not None:
            return filters.window
        lookback = filters.lookback if filters.lookback is not None else self._default_lookback
        return lookback_window(lookback, self._clock.today())

    def prepare(
        self,
        records: Iterable[Any],
        filters: Optional[AggregationFilters] = None,
    ) -> PreparedClaims:
        filters = filters or AggregationFilters()
        window = self.display_window(filters)
        claims, rejected = coerce_claims(records)

        by_metric: dict[UUID, list[ImpactClaim]] = {}
        for metric_id in filters.metric_ids or ():
            by_metric[metric_id] = []

        for claim in claims:
            if filters.metric_ids is not None and claim.metric_id not in filters.metric_ids:
                continue
            if filters.location_ids is not None and claim.location_id not in filters.location_ids:
                continue
            bucket = by_metric.setdefault(claim.metric_id, [])
            if window.includes(claim.effective_date):
                bucket.append(claim)

        for bucket in by_metric.values():
            bucket.sort(key=lambda c: sort_key(c.window))

        return PreparedClaims(
            window=window,
            today=self._clock.today(),
            by_metric=by_metric,
            rejected=rejected,
        )

    def aggregate(
        self,
        records: Iterable[Any],
        filters: Optional[AggregationFilters] = None,
    ) -> AggregationResult:
        """Totals and daily cumulative series per metric."""
        prepared = self.prepare(records, filters)
        return AggregationResult(
            window=prepared.window,
            totals=totals_for(prepared),
            series=series_for(prepared),
            rejected=list(prepared.rejected),
        )

    def monthly(
        self,
        records: Iterable[Any],
        filters: Optional[AggregationFilters] = None,
    ) -> dict[UUID, list[MonthlyPoint]]:
        return monthly_for(self.prepare(records, filters))
