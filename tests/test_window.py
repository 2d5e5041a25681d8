"""
Tests for temporal windows and the overlap math built on them.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from impactledger.core.temporal import (
    coverage_fraction,
    covered_days,
    overlap_days,
    overlap_window,
)
from impactledger.errors import InvalidWindow
from impactledger.schemas import ImpactClaim, TemporalWindow, to_calendar_date


class TestConstruction:
    """InvalidWindow is raised iff neither a date nor a valid range exists."""

    def test_single_date(self):
        window = TemporalWindow.single(date(2024, 3, 1))
        assert not window.is_range
        assert window.duration_days == 1
        assert window.effective_date == date(2024, 3, 1)

    def test_range(self):
        window = TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15))
        assert window.is_range
        assert window.duration_days == 6
        assert window.effective_date == date(2024, 3, 15)

    def test_one_day_range(self):
        window = TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 10))
        assert window.duration_days == 1

    def test_inverted_range_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow.between(date(2024, 3, 15), date(2024, 3, 10))

    def test_nothing_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow.from_parts()

    def test_half_range_without_date_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow.from_parts(start=date(2024, 3, 1))

    def test_inverted_range_without_date_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow.from_parts(start=date(2024, 3, 5), end=date(2024, 3, 1))

    def test_valid_range_wins_over_date(self):
        window = TemporalWindow.from_parts(
            day=date(2024, 1, 1), start=date(2024, 3, 1), end=date(2024, 3, 5)
        )
        assert window.is_range
        assert window.first_day == date(2024, 3, 1)

    def test_broken_range_falls_back_to_date(self):
        window = TemporalWindow.from_parts(
            day=date(2024, 1, 1), start=date(2024, 3, 5), end=date(2024, 3, 1)
        )
        assert window == TemporalWindow.single(date(2024, 1, 1))

    def test_direct_construction_with_both_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow(day=date(2024, 1, 1), start=date(2024, 1, 1), end=date(2024, 1, 2))

    def test_unparseable_string_rejected(self):
        with pytest.raises(InvalidWindow):
            TemporalWindow.single("not-a-date")

    def test_windows_are_hashable_and_comparable(self):
        a = TemporalWindow.between("2024-03-01", "2024-03-05")
        b = TemporalWindow.between(date(2024, 3, 1), date(2024, 3, 5))
        assert a == b
        assert len({a, b}) == 1


class TestNormalization:
    """Timestamps become calendar dates once, at the edge."""

    def test_iso_date_string(self):
        assert to_calendar_date("2024-03-01") == date(2024, 3, 1)

    def test_naive_datetime(self):
        assert to_calendar_date(datetime(2024, 3, 1, 23, 59)) == date(2024, 3, 1)

    def test_aware_datetime_keeps_its_own_date(self):
        # 23:30 at UTC-5 is already the next day in UTC; the record's date wins
        local = datetime(2024, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert to_calendar_date(local) == date(2024, 3, 1)

    def test_z_suffix_timestamp(self):
        assert to_calendar_date("2024-03-01T10:00:00Z") == date(2024, 3, 1)

    def test_empty_string_is_absent(self):
        assert to_calendar_date("") is None


class TestOverlap:

    @pytest.fixture
    def claim_window(self):
        return TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15))

    def test_partial_overlap(self, claim_window):
        evidence = TemporalWindow.between(date(2024, 3, 12), date(2024, 3, 13))
        assert overlap_days(evidence, claim_window) == 2

    def test_disjoint(self, claim_window):
        evidence = TemporalWindow.between(date(2024, 4, 1), date(2024, 4, 3))
        assert overlap_days(evidence, claim_window) == 0
        assert overlap_window(evidence, claim_window) is None

    def test_single_date_counts_as_one_day(self, claim_window):
        assert overlap_days(TemporalWindow.single(date(2024, 3, 15)), claim_window) == 1

    def test_identical_single_dates(self):
        day = TemporalWindow.single(date(2024, 3, 1))
        assert overlap_days(day, day) == 1
        assert coverage_fraction(day, day) == 1

    def test_fraction_is_relative_to_claim(self, claim_window):
        evidence = TemporalWindow.between(date(2024, 3, 12), date(2024, 3, 13))
        assert coverage_fraction(evidence, claim_window) == Decimal(2) / Decimal(6)
        # Swapping roles changes the denominator
        assert coverage_fraction(claim_window, evidence) == 1

    def test_fraction_clamped_to_one(self, claim_window):
        wide = TemporalWindow.between(date(2024, 1, 1), date(2024, 12, 31))
        assert coverage_fraction(wide, claim_window) == 1

    def test_covered_days_is_a_union(self, claim_window):
        first = TemporalWindow.between(date(2024, 3, 9), date(2024, 3, 12))
        second = TemporalWindow.between(date(2024, 3, 11), date(2024, 3, 13))
        days = covered_days(claim_window, [first, second])
        assert days == {date(2024, 3, d) for d in (10, 11, 12, 13)}


class TestClaimWindowEdge:
    """Claims accept the flat date columns rows carry."""

    def test_flat_single_date(self):
        claim = ImpactClaim(metric_id=uuid4(), value=Decimal("5"), date_represented="2024-03-01")
        assert claim.window == TemporalWindow.single(date(2024, 3, 1))

    def test_flat_range(self):
        claim = ImpactClaim(
            metric_id=uuid4(), value=Decimal("5"),
            date_range_start="2024-03-01", date_range_end="2024-03-04",
        )
        assert claim.window.duration_days == 4

    def test_no_dates_rejected(self):
        with pytest.raises(InvalidWindow):
            ImpactClaim(metric_id=uuid4(), value=Decimal("5"))
