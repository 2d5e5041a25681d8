# Impact Accounting Engine
from .clock import Clock, FixedClock, SystemClock
from .temporal import coverage_fraction, covered_days, overlap_days, overlap_window
from .aggregator import (
    AggregationFilters,
    AggregationResult,
    ClaimAggregator,
    DailyPoint,
    Lookback,
    MonthlyPoint,
    RejectedRecord,
    category_breakdown,
    lookback_window,
)
from .coverage import (
    ClaimProof,
    CoverageResult,
    CoverageStatus,
    ProofLevel,
    SelectionPolicy,
    WindowGroup,
    candidate_claims,
    claim_proof,
    claim_proofs,
    coverage,
    coverage_report,
    default_selection,
    group_by_window,
    proof_level,
)
from .ledger import ConservationViolation, CreditLedger, CreditSummary
from .presentation import AxisBounds, axis_bounds, downsample, format_tick

__all__ = [
    "Clock",
    "FixedClock",
    "SystemClock",
    "coverage_fraction",
    "covered_days",
    "overlap_days",
    "overlap_window",
    "AggregationFilters",
    "AggregationResult",
    "ClaimAggregator",
    "DailyPoint",
    "Lookback",
    "MonthlyPoint",
    "RejectedRecord",
    "category_breakdown",
    "lookback_window",
    "ClaimProof",
    "CoverageResult",
    "CoverageStatus",
    "ProofLevel",
    "SelectionPolicy",
    "WindowGroup",
    "candidate_claims",
    "claim_proof",
    "claim_proofs",
    "coverage",
    "coverage_report",
    "default_selection",
    "group_by_window",
    "proof_level",
    "ConservationViolation",
    "CreditLedger",
    "CreditSummary",
    "AxisBounds",
    "axis_bounds",
    "downsample",
    "format_tick",
]
