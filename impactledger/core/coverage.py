"""
Coverage Calculator

Answers "how much of this claim does this evidence prove?".

The answer is always relative to the claim's own span. Each result also
carries the claim's window, so a caller can offer to widen the evidence
window to match a partially covered claim.

Classification:
- 100%: evidence window contains the claim window
- 1-99%: partial overlap (never rounded to 0 or 100)
- 0%: no overlap; still reported, never auto-selected
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional
from uuid import UUID

from ..schemas import EvidenceItem, ImpactClaim, TemporalWindow
from .aggregator import RejectedRecord, coerce_claims
from .temporal import coverage_fraction, covered_days


class CoverageStatus(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    NONE = "none"


class SelectionPolicy(str, Enum):
    """Which coverage results are pre-selected when evidence is attached."""
    COVERED = "covered"         # partial or full
    FULL_ONLY = "full_only"
    NONE = "none"               # nothing pre-selected


class ProofLevel(str, Enum):
    FULLY_PROVEN = "fully_proven"       # 80-100
    SOME_PROOF = "some_proof"           # 30-79
    NEEDS_EVIDENCE = "needs_evidence"   # 0-29


def to_percent(fraction: Decimal) -> int:
    """Round a [0, 1] fraction to a whole percentage, half up."""
    return int((fraction * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def proof_level(percent: int) -> ProofLevel:
    if percent >= 80:
        return ProofLevel.FULLY_PROVEN
    if percent >= 30:
        return ProofLevel.SOME_PROOF
    return ProofLevel.NEEDS_EVIDENCE


# ============================================================
# SINGLE EVIDENCE ITEM
# ============================================================

@dataclass(frozen=True)
class CoverageResult:
    claim_id: UUID
    percent: int
    fraction: Decimal
    status: CoverageStatus
    claim_window: TemporalWindow

    @property
    def fully_covered(self) -> bool:
        return self.status == CoverageStatus.FULL

    @property
    def suggested_window(self) -> Optional[TemporalWindow]:
        """The window the evidence would need to fully cover this claim."""
        return None if self.fully_covered else self.claim_window


@dataclass
class CoverageReport:
    results: list[CoverageResult]
    rejected: list[RejectedRecord]


def coverage_for_claim(evidence_window: TemporalWindow, claim: ImpactClaim) -> CoverageResult:
    fraction = coverage_fraction(evidence_window, claim.window)
    if evidence_window.contains(claim.window):
        status, percent = CoverageStatus.FULL, 100
    elif fraction == 0:
        status, percent = CoverageStatus.NONE, 0
    else:
        status = CoverageStatus.PARTIAL
        percent = min(max(to_percent(fraction), 1), 99)
    return CoverageResult(
        claim_id=claim.id,
        percent=percent,
        fraction=fraction,
        status=status,
        claim_window=claim.window,
    )


def coverage_report(evidence: EvidenceItem, candidate_claims: Iterable[Any]) -> CoverageReport:
    """Coverage of every candidate. Malformed candidates are reported, not raised."""
    claims, rejected = coerce_claims(candidate_claims)
    return CoverageReport(
        results=[coverage_for_claim(evidence.window, claim) for claim in claims],
        rejected=rejected,
    )


def coverage(evidence: EvidenceItem, candidate_claims: Iterable[Any]) -> list[CoverageResult]:
    return coverage_report(evidence, candidate_claims).results


def candidate_claims(evidence: EvidenceItem, claims: Iterable[ImpactClaim]) -> list[ImpactClaim]:
    """Claims of the metrics the evidence supports."""
    metric_ids = set(evidence.metric_ids)
    return [claim for claim in claims if claim.metric_id in metric_ids]


def default_selection(
    results: Iterable[CoverageResult],
    policy: SelectionPolicy = SelectionPolicy.COVERED,
) -> set[UUID]:
    """
    Claims pre-selected for linking under the given policy.

    Whether a selection survives a re-fetch is up to the caller.
    """
    if policy == SelectionPolicy.NONE:
        return set()
    if policy == SelectionPolicy.FULL_ONLY:
        return {r.claim_id for r in results if r.status == CoverageStatus.FULL}
    return {r.claim_id for r in results if r.status != CoverageStatus.NONE}


# ============================================================
# ALL LINKED EVIDENCE FOR ONE CLAIM
# ============================================================

@dataclass(frozen=True)
class ClaimProof:
    """How much of one claim is covered by the union of its linked evidence."""
    claim_id: UUID
    window: TemporalWindow
    value: Decimal
    covered_days: int
    total_days: int
    percent: int
    evidence_count: int

    @property
    def fully_proven(self) -> bool:
        return self.covered_days == self.total_days

    @property
    def level(self) -> ProofLevel:
        return proof_level(self.percent)


def claim_proof(claim: ImpactClaim, linked_evidence: Iterable[EvidenceItem]) -> ClaimProof:
    """
    Combine every explicitly linked evidence item.

    Overlapping evidence is not double counted: covered days are a union.
    """
    evidence = list(linked_evidence)
    days = covered_days(claim.window, (item.window for item in evidence))
    total = claim.window.duration_days
    return ClaimProof(
        claim_id=claim.id,
        window=claim.window,
        value=claim.value,
        covered_days=len(days),
        total_days=total,
        percent=to_percent(Decimal(len(days)) / Decimal(total)),
        evidence_count=len(evidence),
    )


def claim_proofs(
    claims: Iterable[ImpactClaim],
    evidence_for: Callable[[UUID], list[EvidenceItem]],
) -> list[ClaimProof]:
    """Proof for each claim; evidence_for is usually store.list_evidence_links."""
    return [claim_proof(claim, evidence_for(claim.id)) for claim in claims]


@dataclass(frozen=True)
class WindowGroup:
    """Claims sharing an identical window, summarized together."""
    window: TemporalWindow
    claim_ids: tuple[UUID, ...]
    total_value: Decimal
    average_percent: int
    fully_proven: bool


def group_by_window(proofs: Iterable[ClaimProof]) -> list[WindowGroup]:
    """Group proofs by identical window, ordered by effective date."""
    grouped: dict[TemporalWindow, list[ClaimProof]] = {}
    for proof in proofs:
        grouped.setdefault(proof.window, []).append(proof)

    groups = []
    for window, members in grouped.items():
        mean = Decimal(sum(p.percent for p in members)) / Decimal(len(members))
        groups.append(WindowGroup(
            window=window,
            claim_ids=tuple(p.claim_id for p in members),
            total_value=sum((p.value for p in members), Decimal(0)),
            average_percent=int(mean.quantize(Decimal(1), rounding=ROUND_HALF_UP)),
            fully_proven=all(p.fully_proven for p in members),
        ))
    groups.sort(key=lambda g: (g.window.effective_date, g.window.first_day))
    return groups
