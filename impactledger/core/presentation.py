"""
Series Presentation

Chart-ready numbers derived from aggregated series: axis ceiling with
headroom, tick marks that always show the true maximum, tick labels and
downsampling. Pure functions; nothing here feeds back into totals.
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Iterable, Optional, Sequence, TypeVar
from uuid import UUID

from .aggregator import DailyPoint

ZERO = Decimal(0)
CENT = Decimal("0.01")

# (upper bound exclusive, headroom factor); above the last bound: 1.10
HEADROOM_STEPS = (
    (Decimal(100), Decimal("1.20")),
    (Decimal(1000), Decimal("1.15")),
    (Decimal(10000), Decimal("1.12")),
)
DEFAULT_HEADROOM = Decimal("1.10")

DEFAULT_TICK_COUNT = 5
MERGE_TOLERANCE = Decimal("0.1")  # fraction of one tick step

T = TypeVar("T")


@dataclass(frozen=True)
class AxisBounds:
    ceiling: Decimal
    ticks: list[Decimal]
    max_value: Decimal


def headroom_factor(max_value: Decimal) -> Decimal:
    for bound, factor in HEADROOM_STEPS:
        if max_value < bound:
            return factor
    return DEFAULT_HEADROOM


def _tidy(value: Decimal) -> Decimal:
    if value == value.to_integral_value():
        return value.to_integral_value()
    return value.quantize(CENT)


def visible_max(
    series: dict[UUID, list[DailyPoint]],
    visible_metric_ids: Optional[Iterable[UUID]] = None,
) -> Decimal:
    """Largest value across the visible metrics' series (0 when empty)."""
    metric_ids = series.keys() if visible_metric_ids is None else visible_metric_ids
    values = [p.value for mid in metric_ids for p in series.get(mid, [])]
    return max(values, default=ZERO)


def axis_bounds(
    series: dict[UUID, list[DailyPoint]],
    visible_metric_ids: Optional[Iterable[UUID]] = None,
    tick_count: int = DEFAULT_TICK_COUNT,
) -> AxisBounds:
    """
    Axis ceiling and ticks for the visible metrics.

    The ceiling is the maximum scaled by its headroom factor, rounded up to
    a whole number. Ticks are evenly spaced from 0 to the ceiling; the true
    maximum replaces the nearest tick when within 10% of a step, otherwise
    it is inserted.
    """
    max_value = visible_max(series, visible_metric_ids)
    if max_value <= 0:
        return AxisBounds(ceiling=ZERO, ticks=[ZERO], max_value=ZERO)

    ceiling = (max_value * headroom_factor(max_value)).to_integral_value(rounding=ROUND_CEILING)
    intervals = max(tick_count - 1, 1)
    step = ceiling / intervals
    ticks = [_tidy(step * i) for i in range(intervals + 1)]

    nearest = min(range(len(ticks)), key=lambda i: abs(ticks[i] - max_value))
    if abs(ticks[nearest] - max_value) <= step * MERGE_TOLERANCE:
        ticks[nearest] = max_value
    else:
        ticks.append(max_value)

    deduped: list[Decimal] = []
    for tick in sorted(ticks):
        if not deduped or deduped[-1] != tick:
            deduped.append(tick)
    return AxisBounds(ceiling=ceiling, ticks=deduped, max_value=max_value)


def format_tick(value: Decimal) -> str:
    """1.2M, 3.4K, or the plain number without trailing zeros."""
    value = Decimal(value)
    if abs(value) >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if abs(value) >= 1_000:
        return f"{value / 1_000:.1f}K"
    if value == value.to_integral_value():
        return str(value.to_integral_value())
    return format(value.quantize(CENT).normalize(), "f")


def downsample(points: Sequence[T], max_points: int = 60, stride: int = 7) -> list[T]:
    """
    Thin a long series for charting: every stride-th point plus the last.

    Series at or under max_points pass through untouched.
    """
    if len(points) <= max_points:
        return list(points)
    thinned = list(points[::stride])
    if (len(points) - 1) % stride != 0:
        thinned.append(points[-1])
    return thinned
