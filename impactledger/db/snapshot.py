"""
Snapshot Export / Import

A snapshot is one scope's whole data set as a single JSON document:
metrics, claims, evidence (with links), donors and credit allocations.

Import replays every credit through CreditLedger.propose_allocation, so
a snapshot that breaks conservation is refused and leaves the store untouched.

Usage:
    snapshot = export_snapshot(store)
    write_snapshot(snapshot, Path("credits.json"))

    store = InMemoryCreditStore()
    import_snapshot(store, read_snapshot(Path("credits.json")))
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..core.ledger import CreditLedger
from ..observability import MetricsCollector, get_logger
from ..schemas import CreditAllocation, Donor, EvidenceItem, ImpactClaim, Metric
from .store import CreditStore, InMemoryCreditStore

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1


class Snapshot(BaseModel):
    """Everything in one credit store scope."""
    version: int = Field(default=SNAPSHOT_VERSION)
    exported_at: Optional[datetime] = Field(default=None)
    metrics: list[Metric] = Field(default_factory=list)
    claims: list[ImpactClaim] = Field(default_factory=list)
    evidence: list[EvidenceItem] = Field(default_factory=list)
    donors: list[Donor] = Field(default_factory=list)
    allocations: list[CreditAllocation] = Field(default_factory=list)


class ImportResult(BaseModel):
    metrics: int = 0
    claims: int = 0
    evidence: int = 0
    donors: int = 0
    allocations: int = 0


def export_snapshot(store: CreditStore) -> Snapshot:
    return Snapshot(
        exported_at=datetime.now(timezone.utc),
        metrics=store.list_metrics(),
        claims=store.list_claims(),
        evidence=store.list_evidence(),
        donors=store.list_donors(),
        allocations=store.list_all_allocations(),
    )


def import_snapshot(
    store: CreditStore,
    snapshot: Snapshot,
    ledger: Optional[CreditLedger] = None,
) -> ImportResult:
    """
    Load a snapshot into a store, all or nothing.

    The snapshot is first replayed into a scratch in-memory store, so a
    snapshot that breaks conservation is refused before the target sees
    a single write. If the real replay still fails (the target already
    holds a clashing donor email, say), everything this import added is
    deleted again before the error propagates.

    Order matters: metrics, claims, evidence, donors, then credits.
    """
    if snapshot.version != SNAPSHOT_VERSION:
        raise ValueError(f"Unsupported snapshot version: {snapshot.version}")

    scratch = InMemoryCreditStore()
    _replay(scratch, snapshot, CreditLedger(scratch, metrics=MetricsCollector()), ImportResult())

    result = ImportResult()
    try:
        _replay(store, snapshot, ledger or CreditLedger(store), result)
    except Exception:
        logger.warning("Snapshot import failed, undoing partial import", **result.model_dump())
        _undo(store, snapshot, result)
        raise

    logger.info("Snapshot imported", **result.model_dump())
    return result


def _replay(
    store: CreditStore,
    snapshot: Snapshot,
    ledger: CreditLedger,
    result: ImportResult,
) -> None:
    for metric in snapshot.metrics:
        store.add_metric(metric)
        result.metrics += 1
    for claim in snapshot.claims:
        store.add_claim(claim)
        result.claims += 1
    for evidence in snapshot.evidence:
        store.add_evidence(evidence)
        result.evidence += 1
    for donor in snapshot.donors:
        store.add_donor(donor)
        result.donors += 1
    for allocation in snapshot.allocations:
        ledger.propose_allocation(allocation)
        result.allocations += 1


def _undo(store: CreditStore, snapshot: Snapshot, result: ImportResult) -> None:
    """Delete the first N records of each kind that _replay managed to add."""
    for donor in snapshot.donors[:result.donors]:
        store.delete_donor(donor.id)
    for evidence in snapshot.evidence[:result.evidence]:
        store.delete_evidence(evidence.id)
    for metric in snapshot.metrics[:result.metrics]:
        store.delete_metric(metric.id)


def read_snapshot(path: Path) -> Snapshot:
    with open(path, "r", encoding="utf-8") as f:
        return Snapshot.model_validate_json(f.read())


def write_snapshot(snapshot: Snapshot, path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(snapshot.model_dump_json(indent=2))
