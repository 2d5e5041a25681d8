"""
Temporal Window operations.

Overlap math always uses the full window. Effective dates are for ordering
and chart placement only.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from ..schemas import TemporalWindow


def overlap_days(a: TemporalWindow, b: TemporalWindow) -> int:
    """Whole days common to both windows. A single date counts as one day."""
    first = max(a.first_day, b.first_day)
    last = min(a.last_day, b.last_day)
    if first > last:
        return 0
    return (last - first).days + 1


def overlap_window(a: TemporalWindow, b: TemporalWindow) -> Optional[TemporalWindow]:
    """The shared span of two windows, or None when disjoint."""
    first = max(a.first_day, b.first_day)
    last = min(a.last_day, b.last_day)
    if first > last:
        return None
    return TemporalWindow.between(first, last)


def coverage_fraction(evidence_window: TemporalWindow, claim_window: TemporalWindow) -> Decimal:
    """
    Share of the claim's days that the evidence window overlaps, in [0, 1].

    Always relative to the claim's duration: swapping the arguments changes
    the denominator and, in general, the result.
    """
    fraction = Decimal(overlap_days(evidence_window, claim_window)) / Decimal(
        claim_window.duration_days
    )
    return min(max(fraction, Decimal(0)), Decimal(1))


def covered_days(claim_window: TemporalWindow, windows: Iterable[TemporalWindow]) -> set[date]:
    """Days of the claim window covered by at least one of the given windows."""
    days: set[date] = set()
    for window in windows:
        shared = overlap_window(window, claim_window)
        if shared is not None:
            days.update(shared.days())
    return days


def sort_key(window: TemporalWindow) -> tuple[date, date]:
    """Chronological ordering: effective date, then first day."""
    return (window.effective_date, window.first_day)
