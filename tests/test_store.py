"""
Tests for the credit stores.

The in-memory store is exercised directly; the PostgreSQL store is only
checked where it needs no server.
"""

import threading
import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from impactledger.db.store import InMemoryCreditStore, PostgresCreditStore, _window_columns
from impactledger.errors import (
    ConcurrencyError,
    DuplicateDonorEmail,
    InvalidValue,
    LockTimeoutError,
    UnknownReference,
)
from impactledger.schemas import (
    CreditAllocation,
    Donor,
    EvidenceItem,
    ImpactClaim,
    Metric,
    MetricKind,
    TemporalWindow,
)


@pytest.fixture
def store():
    return InMemoryCreditStore(lock_timeout_s=0.2)


@pytest.fixture
def metric(store):
    return store.add_metric(Metric(title="People Trained"))


def _claim(store, metric, value, day):
    return store.add_claim(ImpactClaim(
        metric_id=metric.id, value=Decimal(value), window=TemporalWindow.single(day),
    ))


class TestClaims:

    def test_listed_in_chronological_order(self, store, metric):
        late = _claim(store, metric, "1", date(2024, 3, 9))
        early = _claim(store, metric, "1", date(2024, 3, 1))
        assert [c.id for c in store.list_claims()] == [early.id, late.id]

    def test_window_filter_uses_effective_date(self, store, metric):
        ranged = store.add_claim(ImpactClaim(
            metric_id=metric.id, value=Decimal("3"),
            window=TemporalWindow.between(date(2024, 2, 20), date(2024, 3, 2)),
        ))
        _claim(store, metric, "1", date(2024, 4, 1))
        march = TemporalWindow.between(date(2024, 3, 1), date(2024, 3, 31))
        assert [c.id for c in store.list_claims(window=march)] == [ranged.id]

    def test_unknown_metric(self, store):
        with pytest.raises(UnknownReference):
            store.add_claim(ImpactClaim(
                metric_id=uuid4(), value=Decimal("1"),
                window=TemporalWindow.single(date(2024, 3, 1)),
            ))

    def test_percentage_ceiling(self, store):
        share = store.add_metric(Metric(title="Attendance rate", kind=MetricKind.PERCENTAGE))
        with pytest.raises(InvalidValue):
            _claim(store, share, "100.5", date(2024, 3, 1))

    def test_metric_cannot_become_percentage_over_ceiling(self, store, metric):
        _claim(store, metric, "250", date(2024, 3, 1))
        with pytest.raises(InvalidValue):
            store.update_metric(metric.model_copy(update={"kind": MetricKind.PERCENTAGE}))

    def test_created_at_stamped(self, store, metric):
        assert _claim(store, metric, "1", date(2024, 3, 1)).created_at is not None


class TestEvidenceLinks:

    def test_links_round_trip(self, store, metric):
        claim = _claim(store, metric, "5", date(2024, 3, 1))
        evidence = store.add_evidence(EvidenceItem(
            title="Photos", window=TemporalWindow.single(date(2024, 3, 1)),
            metric_ids=[metric.id], claim_ids=[claim.id],
        ))
        assert [e.id for e in store.list_evidence_links(claim.id)] == [evidence.id]
        assert [c.id for c in store.list_claims_for_evidence(evidence.id)] == [claim.id]

        store.unlink_evidence(evidence.id, claim.id)
        assert store.list_evidence_links(claim.id) == []

    def test_deleting_claim_drops_links(self, store, metric):
        claim = _claim(store, metric, "5", date(2024, 3, 1))
        evidence = store.add_evidence(EvidenceItem(
            window=TemporalWindow.single(date(2024, 3, 1)), claim_ids=[claim.id],
        ))
        store.delete_claim(claim.id)
        assert store.get_evidence(evidence.id).claim_ids == []

    def test_link_to_unknown_claim(self, store):
        evidence = store.add_evidence(EvidenceItem(window=TemporalWindow.single(date(2024, 3, 1))))
        with pytest.raises(UnknownReference):
            store.link_evidence(evidence.id, uuid4())


class TestDonors:

    def test_email_unique_ignoring_case(self, store):
        store.add_donor(Donor(name="Ada", email="ada@example.org"))
        with pytest.raises(DuplicateDonorEmail):
            store.add_donor(Donor(name="Ada again", email="ADA@Example.org"))

    def test_email_needs_at_sign(self):
        with pytest.raises(ValueError):
            Donor(name="Ada", email="ada.example.org")

    def test_deleting_donor_drops_credits(self, store, metric):
        donor = store.add_donor(Donor(name="Ada", email="ada@example.org"))
        _claim(store, metric, "5", date(2024, 3, 1))
        with store.lock_metric(metric.id) as scope:
            scope.save_allocation(CreditAllocation(
                donor_id=donor.id, metric_id=metric.id, credited_value=Decimal("2"),
            ))
            scope.commit()
        store.delete_donor(donor.id)
        assert store.list_all_allocations() == []


class TestMetricScope:

    @pytest.fixture
    def donor(self, store):
        return store.add_donor(Donor(name="Ada", email="ada@example.org"))

    def test_uncommitted_writes_are_discarded(self, store, metric, donor):
        with store.lock_metric(metric.id) as scope:
            scope.save_allocation(CreditAllocation(
                donor_id=donor.id, metric_id=metric.id, credited_value=Decimal("2"),
            ))
        assert store.list_all_allocations() == []

    def test_commit_twice_rejected(self, store, metric):
        with store.lock_metric(metric.id) as scope:
            scope.commit()
            with pytest.raises(ConcurrencyError):
                scope.commit()

    def test_unknown_claim_in_scope(self, store, metric, donor):
        with store.lock_metric(metric.id) as scope:
            scope.save_allocation(CreditAllocation(
                donor_id=donor.id, metric_id=metric.id, claim_id=uuid4(),
                credited_value=Decimal("2"),
            ))
            with pytest.raises(UnknownReference):
                scope.commit()
        assert store.list_all_allocations() == []

    def test_lock_times_out(self, store, metric):
        held = threading.Event()
        release = threading.Event()

        def hold():
            with store.lock_metric(metric.id):
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        held.wait(5)
        try:
            with pytest.raises(LockTimeoutError):
                with store.lock_metric(metric.id):
                    pass
        finally:
            release.set()
            holder.join()

    def test_other_metrics_not_blocked(self, store, metric):
        other = store.add_metric(Metric(title="Meals served"))
        with store.lock_metric(metric.id):
            with store.lock_metric(other.id) as scope:
                assert scope.metric_id == other.id

    def test_unknown_metric(self, store):
        with pytest.raises(UnknownReference):
            with store.lock_metric(uuid4()):
                pass


class TestDeleteMetric:

    def test_cascades(self, store, metric):
        donor = store.add_donor(Donor(name="Ada", email="ada@example.org"))
        claim = _claim(store, metric, "5", date(2024, 3, 1))
        evidence = store.add_evidence(EvidenceItem(
            window=TemporalWindow.single(date(2024, 3, 1)),
            metric_ids=[metric.id], claim_ids=[claim.id],
        ))
        with store.lock_metric(metric.id) as scope:
            scope.save_allocation(CreditAllocation(
                donor_id=donor.id, metric_id=metric.id, claim_id=claim.id,
                credited_value=Decimal("2"),
            ))
            scope.commit()

        store.delete_metric(metric.id)

        assert store.get_metric(metric.id) is None
        assert store.list_claims() == []
        assert store.list_all_allocations() == []
        remaining = store.get_evidence(evidence.id)
        assert remaining.metric_ids == []
        assert remaining.claim_ids == []


class TestPostgresHelpers:
    """Pieces of the PostgreSQL store that need no server."""

    class _PgError(Exception):
        def __init__(self, pgcode, pgerror):
            super().__init__(pgerror)
            self.pgcode = pgcode
            self.pgerror = pgerror

    @pytest.fixture
    def pg_store(self):
        return PostgresCreditStore(connection_factory=lambda: None)

    def test_lock_not_available(self, pg_store):
        assert pg_store._timeout_kind(self._PgError("55P03", "could not obtain lock")) == "lock"

    def test_lock_timeout_cancel(self, pg_store):
        e = self._PgError("57014", "canceling statement due to lock timeout")
        assert pg_store._timeout_kind(e) == "lock"

    def test_statement_timeout_cancel(self, pg_store):
        e = self._PgError("57014", "canceling statement due to statement timeout")
        assert pg_store._timeout_kind(e) == "statement"

    def test_other_error(self, pg_store):
        assert pg_store._timeout_kind(self._PgError("23505", "duplicate key")) is None

    def test_window_columns(self):
        assert _window_columns(TemporalWindow.single(date(2024, 3, 1))) == (
            date(2024, 3, 1), None, None,
        )
        assert _window_columns(TemporalWindow.between(date(2024, 3, 1), date(2024, 3, 2))) == (
            None, date(2024, 3, 1), date(2024, 3, 2),
        )
