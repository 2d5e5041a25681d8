"""
Tests for snapshot export/import and the management CLI.
"""

import pytest
from datetime import date
from decimal import Decimal

from impactledger.core import CreditLedger
from impactledger.db.factory import use_credit_store
from impactledger.db.snapshot import (
    Snapshot,
    export_snapshot,
    import_snapshot,
    read_snapshot,
    write_snapshot,
)
from impactledger.db.store import InMemoryCreditStore
from impactledger.errors import DuplicateDonorEmail, OverAllocation
from impactledger.schemas import (
    CreditAllocation,
    Donor,
    EvidenceItem,
    ImpactClaim,
    Metric,
    TemporalWindow,
)
from tools import manage


@pytest.fixture
def populated():
    """A store with one metric, two claims, linked evidence and two credits."""
    store = InMemoryCreditStore()
    ledger = CreditLedger(store)
    metric = store.add_metric(Metric(title="People Trained", unit="people"))
    single = store.add_claim(ImpactClaim(
        metric_id=metric.id, value=Decimal("50"),
        window=TemporalWindow.single(date(2024, 3, 1)),
    ))
    ranged = store.add_claim(ImpactClaim(
        metric_id=metric.id, value=Decimal("30"),
        window=TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15)),
    ))
    store.add_evidence(EvidenceItem(
        title="Sign-in sheets",
        window=TemporalWindow.between(date(2024, 3, 12), date(2024, 3, 13)),
        metric_ids=[metric.id],
        claim_ids=[ranged.id],
    ))
    donor = store.add_donor(Donor(name="Donor A", email="a@example.org"))
    ledger.propose_allocation(CreditAllocation(
        donor_id=donor.id, metric_id=metric.id, claim_id=ranged.id,
        credited_value=Decimal("20"),
    ))
    ledger.propose_allocation(CreditAllocation(
        donor_id=donor.id, metric_id=metric.id, credited_value=Decimal("5"),
    ))
    return {
        "store": store,
        "metric": metric,
        "single": single,
        "ranged": ranged,
        "donor": donor,
    }


@pytest.fixture
def snapshot_file(populated, tmp_path):
    path = tmp_path / "credits.json"
    write_snapshot(export_snapshot(populated["store"]), path)
    return path


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch):
    monkeypatch.setattr(manage, "setup_logging", lambda: None)
    yield
    use_credit_store(None)


class TestSnapshot:

    def test_round_trip_through_file(self, populated, snapshot_file):
        restored = InMemoryCreditStore()
        result = import_snapshot(restored, read_snapshot(snapshot_file))

        assert (result.metrics, result.claims, result.evidence, result.donors, result.allocations) == (
            1, 2, 1, 1, 2
        )
        ledger = CreditLedger(restored)
        metric_id = populated["metric"].id
        assert ledger.available_to_credit(metric_id, populated["ranged"].id) == Decimal("10")
        assert ledger.available_to_credit(metric_id) == Decimal("55")
        assert [e.id for e in restored.list_evidence_links(populated["ranged"].id)] == [
            e.id for e in populated["store"].list_evidence_links(populated["ranged"].id)
        ]

    def test_over_credited_snapshot_rejected(self, populated):
        snapshot = export_snapshot(populated["store"])
        snapshot.allocations.append(CreditAllocation(
            donor_id=populated["donor"].id,
            metric_id=populated["metric"].id,
            claim_id=populated["single"].id,
            credited_value=Decimal("51"),
        ))
        with pytest.raises(OverAllocation):
            import_snapshot(InMemoryCreditStore(), snapshot)

    def test_refused_snapshot_leaves_store_untouched(self):
        source = InMemoryCreditStore()
        metric = source.add_metric(Metric(title="Meals Served", unit="meals"))
        claim = source.add_claim(ImpactClaim(
            metric_id=metric.id, value=Decimal("30"),
            window=TemporalWindow.single(date(2024, 3, 1)),
        ))
        donor = source.add_donor(Donor(name="Donor A", email="a@example.org"))
        snapshot = export_snapshot(source)
        snapshot.allocations = [
            CreditAllocation(donor_id=donor.id, metric_id=metric.id, claim_id=claim.id,
                             credited_value=Decimal("20")),
            CreditAllocation(donor_id=donor.id, metric_id=metric.id, claim_id=claim.id,
                             credited_value=Decimal("15")),
        ]

        target = InMemoryCreditStore()
        kept = target.add_metric(Metric(title="Existing", unit="people"))
        with pytest.raises(OverAllocation):
            import_snapshot(target, snapshot)

        assert [m.id for m in target.list_metrics()] == [kept.id]
        assert target.list_claims() == []
        assert target.list_donors() == []
        assert target.list_all_allocations() == []

    def test_failure_against_target_is_undone(self, populated):
        """The snapshot is sound on its own but clashes with a donor already in the target."""
        target = InMemoryCreditStore()
        existing = target.add_donor(Donor(name="Someone Else", email="A@Example.org"))

        with pytest.raises(DuplicateDonorEmail):
            import_snapshot(target, export_snapshot(populated["store"]))

        assert target.list_metrics() == []
        assert target.list_claims() == []
        assert target.list_evidence() == []
        assert [d.id for d in target.list_donors()] == [existing.id]
        assert target.list_all_allocations() == []

    def test_unknown_version_rejected(self):
        with pytest.raises(ValueError):
            import_snapshot(InMemoryCreditStore(), Snapshot(version=99))


class TestManageCli:

    def test_verify_credits(self, snapshot_file, capsys):
        assert manage.main(["verify-credits", "--snapshot", str(snapshot_file)]) == 0
        assert "[OK]" in capsys.readouterr().out

    def test_available_for_claim(self, populated, snapshot_file, capsys):
        code = manage.main([
            "available",
            "--metric", str(populated["metric"].id),
            "--claim", str(populated["ranged"].id),
            "--snapshot", str(snapshot_file),
        ])
        assert code == 0
        assert capsys.readouterr().out.strip() == "10"

    def test_available_for_unknown_metric(self, snapshot_file, capsys):
        code = manage.main([
            "available",
            "--metric", "00000000-0000-0000-0000-000000000000",
            "--snapshot", str(snapshot_file),
        ])
        assert code == 2
        assert "Unknown metric" in capsys.readouterr().err

    def test_summary_over_explicit_window(self, snapshot_file, capsys):
        code = manage.main([
            "summary",
            "--start", "2024-03-01",
            "--end", "2024-03-15",
            "--snapshot", str(snapshot_file),
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "People Trained: 80 people" in out
        assert "Axis ceiling: 96" in out

    def test_summary_with_series(self, snapshot_file, capsys):
        code = manage.main([
            "summary",
            "--start", "2024-03-01",
            "--end", "2024-03-15",
            "--series",
            "--snapshot", str(snapshot_file),
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "2024-03-09  50" in out
        assert "2024-03-15  80" in out

    def test_export_then_import(self, snapshot_file, tmp_path, capsys):
        exported = tmp_path / "again.json"
        assert manage.main([
            "export", "--snapshot", str(snapshot_file), "-o", str(exported),
        ]) == 0

        target = InMemoryCreditStore()
        use_credit_store(target)
        assert manage.main(["import", "-i", str(exported)]) == 0
        assert len(target.list_all_allocations()) == 2

    def test_refused_import_exits_2_and_writes_nothing(self, populated, tmp_path, capsys):
        snapshot = export_snapshot(populated["store"])
        snapshot.allocations.append(CreditAllocation(
            donor_id=populated["donor"].id,
            metric_id=populated["metric"].id,
            claim_id=populated["single"].id,
            credited_value=Decimal("51"),
        ))
        path = tmp_path / "over.json"
        write_snapshot(snapshot, path)

        target = InMemoryCreditStore()
        use_credit_store(target)
        assert manage.main(["import", "-i", str(path)]) == 2
        assert "[FAIL]" in capsys.readouterr().err
        assert target.list_metrics() == []
        assert target.list_all_allocations() == []

    def test_unsupported_snapshot_version(self, tmp_path, capsys):
        path = tmp_path / "future.json"
        write_snapshot(Snapshot(version=99), path)
        assert manage.main(["verify-credits", "--snapshot", str(path)]) == 2
        assert "Unsupported snapshot version" in capsys.readouterr().err

    def test_malformed_snapshot_file(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        assert manage.main(["summary", "--snapshot", str(path)]) == 2
        assert "[FAIL]" in capsys.readouterr().err

    def test_health_check(self, snapshot_file, capsys):
        assert manage.main(["health-check", "--snapshot", str(snapshot_file)]) == 0
        assert "Healthy" in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert manage.main([]) == 1
