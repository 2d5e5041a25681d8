"""
Tests for evidence coverage of claims.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from impactledger.core import (
    CoverageStatus,
    ProofLevel,
    SelectionPolicy,
    candidate_claims,
    claim_proof,
    claim_proofs,
    coverage,
    coverage_report,
    default_selection,
    group_by_window,
    proof_level,
)
from impactledger.schemas import EvidenceItem, ImpactClaim, TemporalWindow


@pytest.fixture
def metric_id():
    return uuid4()


@pytest.fixture
def ranged_claim(metric_id):
    return ImpactClaim(
        metric_id=metric_id,
        value=Decimal("30"),
        window=TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15)),
    )


def _evidence(start, end=None, metric_ids=()):
    window = (
        TemporalWindow.between(start, end) if end is not None
        else TemporalWindow.single(start)
    )
    return EvidenceItem(title="Attendance sheet", window=window, metric_ids=list(metric_ids))


class TestCoverageForOneEvidence:

    def test_partial_overlap(self, ranged_claim):
        """Two days of a six-day claim is 33%, not fully covered."""
        evidence = _evidence(date(2024, 3, 12), date(2024, 3, 13))
        [result] = coverage(evidence, [ranged_claim])
        assert result.percent == 33
        assert result.status == CoverageStatus.PARTIAL
        assert not result.fully_covered

    def test_partial_suggests_claim_window(self, ranged_claim):
        evidence = _evidence(date(2024, 3, 12), date(2024, 3, 13))
        [result] = coverage(evidence, [ranged_claim])
        assert result.suggested_window == ranged_claim.window

    def test_containing_evidence_is_full(self, ranged_claim):
        evidence = _evidence(date(2024, 3, 1), date(2024, 3, 31))
        [result] = coverage(evidence, [ranged_claim])
        assert result.percent == 100
        assert result.fully_covered
        assert result.suggested_window is None

    def test_disjoint_is_reported_as_zero(self, ranged_claim):
        evidence = _evidence(date(2024, 4, 1), date(2024, 4, 2))
        [result] = coverage(evidence, [ranged_claim])
        assert result.percent == 0
        assert result.status == CoverageStatus.NONE

    def test_tiny_overlap_never_rounds_to_zero(self, metric_id):
        long_claim = ImpactClaim(
            metric_id=metric_id,
            value=Decimal("1"),
            window=TemporalWindow.between(date(2020, 1, 1), date(2024, 12, 31)),
        )
        [result] = coverage(_evidence(date(2022, 6, 1)), [long_claim])
        assert result.percent == 1
        assert result.status == CoverageStatus.PARTIAL

    def test_near_total_overlap_never_rounds_to_full(self, metric_id):
        long_claim = ImpactClaim(
            metric_id=metric_id,
            value=Decimal("1"),
            window=TemporalWindow.between(date(2020, 1, 1), date(2024, 12, 31)),
        )
        evidence = _evidence(date(2020, 1, 2), date(2024, 12, 31))
        [result] = coverage(evidence, [long_claim])
        assert result.percent == 99
        assert not result.fully_covered

    def test_single_date_claim(self, metric_id):
        claim = ImpactClaim(
            metric_id=metric_id, value=Decimal("2"),
            window=TemporalWindow.single(date(2024, 3, 12)),
        )
        [result] = coverage(_evidence(date(2024, 3, 12)), [claim])
        assert result.fully_covered

    def test_malformed_candidate_reported(self, ranged_claim, metric_id):
        report = coverage_report(
            _evidence(date(2024, 3, 12), date(2024, 3, 13)),
            [ranged_claim, {"metric_id": str(metric_id), "value": "4"}],
        )
        assert len(report.results) == 1
        assert len(report.rejected) == 1


class TestCandidates:

    def test_candidates_come_from_evidence_metrics(self, ranged_claim, metric_id):
        unrelated = ImpactClaim(
            metric_id=uuid4(), value=Decimal("1"),
            window=TemporalWindow.single(date(2024, 3, 12)),
        )
        evidence = _evidence(date(2024, 3, 12), metric_ids=[metric_id])
        assert candidate_claims(evidence, [ranged_claim, unrelated]) == [ranged_claim]


class TestDefaultSelection:

    @pytest.fixture
    def results(self, metric_id):
        claims = [
            ImpactClaim(metric_id=metric_id, value=Decimal("1"),
                        window=TemporalWindow.single(date(2024, 3, 12))),
            ImpactClaim(metric_id=metric_id, value=Decimal("1"),
                        window=TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15))),
            ImpactClaim(metric_id=metric_id, value=Decimal("1"),
                        window=TemporalWindow.single(date(2024, 5, 1))),
        ]
        return coverage(_evidence(date(2024, 3, 12), date(2024, 3, 13)), claims)

    def test_covered_policy_skips_zero(self, results):
        selected = default_selection(results)
        assert selected == {results[0].claim_id, results[1].claim_id}

    def test_full_only_policy(self, results):
        assert default_selection(results, SelectionPolicy.FULL_ONLY) == {results[0].claim_id}

    def test_none_policy(self, results):
        assert default_selection(results, SelectionPolicy.NONE) == set()


class TestClaimProof:

    def test_union_of_linked_evidence(self, ranged_claim):
        """Overlapping evidence is counted once."""
        linked = [
            _evidence(date(2024, 3, 9), date(2024, 3, 12)),
            _evidence(date(2024, 3, 11), date(2024, 3, 13)),
        ]
        proof = claim_proof(ranged_claim, linked)
        assert proof.covered_days == 4
        assert proof.total_days == 6
        assert proof.percent == 67
        assert proof.evidence_count == 2
        assert not proof.fully_proven
        assert proof.level == ProofLevel.SOME_PROOF

    def test_no_evidence(self, ranged_claim):
        proof = claim_proof(ranged_claim, [])
        assert proof.percent == 0
        assert proof.level == ProofLevel.NEEDS_EVIDENCE

    def test_pieces_can_add_up_to_full(self, ranged_claim):
        linked = [
            _evidence(date(2024, 3, 10), date(2024, 3, 12)),
            _evidence(date(2024, 3, 13), date(2024, 3, 15)),
        ]
        proof = claim_proof(ranged_claim, linked)
        assert proof.fully_proven
        assert proof.level == ProofLevel.FULLY_PROVEN

    def test_proof_levels(self):
        assert proof_level(80) == ProofLevel.FULLY_PROVEN
        assert proof_level(79) == ProofLevel.SOME_PROOF
        assert proof_level(30) == ProofLevel.SOME_PROOF
        assert proof_level(29) == ProofLevel.NEEDS_EVIDENCE

    def test_claim_proofs_uses_lookup(self, ranged_claim):
        lookup = {ranged_claim.id: [_evidence(date(2024, 3, 1), date(2024, 3, 31))]}
        [proof] = claim_proofs([ranged_claim], lambda claim_id: lookup.get(claim_id, []))
        assert proof.fully_proven


class TestGroupByWindow:

    def test_identical_windows_grouped(self, metric_id):
        window = TemporalWindow.between(date(2024, 3, 10), date(2024, 3, 15))
        first = ImpactClaim(metric_id=metric_id, value=Decimal("30"), window=window)
        second = ImpactClaim(metric_id=metric_id, value=Decimal("10"), window=window)
        early = ImpactClaim(
            metric_id=metric_id, value=Decimal("5"),
            window=TemporalWindow.single(date(2024, 3, 1)),
        )
        full = _evidence(date(2024, 3, 1), date(2024, 3, 31))
        proofs = [
            claim_proof(first, [full]),
            claim_proof(second, []),
            claim_proof(early, [full]),
        ]

        groups = group_by_window(proofs)

        assert [g.window for g in groups] == [early.window, window]
        ranged = groups[1]
        assert ranged.claim_ids == (first.id, second.id)
        assert ranged.total_value == Decimal("40")
        assert ranged.average_percent == 50
        assert not ranged.fully_proven
