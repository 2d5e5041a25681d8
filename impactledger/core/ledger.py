"""
Credit Ledger - Conservation of Credited Value

The ledger attributes claimed value to donors and guarantees that value
is never credited twice.

Rules (enforced in code):
- For any claim: sum of its credits <= claim value
- For a metric's pool: pool credits <= sum of claim values - claim-level credits
- Updating a credit is checked with its own prior value excluded
- Deleting a credit always succeeds and frees capacity
- Revising or removing a claim is refused if it would strand existing credits

ARCHITECTURE NOTE:
Storage is delegated to a CreditStore.
- CreditLedger: conservation rules, what may be written
- CreditStore: locking, snapshot consistency, durability

Every check and the write it guards run inside one store.lock_metric()
block. A "read available, then write" sequence split across two calls
would let concurrent credits both pass against a stale total.
"""

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional, TYPE_CHECKING
from uuid import UUID

from ..errors import InvalidValue, OverAllocation, UnknownReference
from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import CreditAllocation, ImpactClaim, TemporalWindow

if TYPE_CHECKING:
    from ..db.store import CreditStore, MetricScope

logger = get_logger(__name__)

ZERO = Decimal(0)


# ============================================================
# PURE ARITHMETIC
# ============================================================

def _credited(allocations: Iterable[CreditAllocation], exclude_id: Optional[UUID] = None) -> Decimal:
    return sum((a.credited_value for a in allocations if a.id != exclude_id), ZERO)


def claim_available(
    claim: ImpactClaim,
    allocations: Iterable[CreditAllocation],
    exclude_id: Optional[UUID] = None,
) -> Decimal:
    """claim.value minus the credits held against that claim."""
    return claim.value - _credited(
        (a for a in allocations if a.claim_id == claim.id), exclude_id
    )


def pool_available(
    claims: Iterable[ImpactClaim],
    allocations: Iterable[CreditAllocation],
    exclude_id: Optional[UUID] = None,
) -> Decimal:
    """Sum of claim values minus every credit of the metric, claim-scoped or pooled."""
    return sum((c.value for c in claims), ZERO) - _credited(allocations, exclude_id)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class ConservationViolation:
    """A scope whose credits exceed what was claimed."""
    metric_id: UUID
    claim_id: Optional[UUID]  # None = metric pool
    claimed: Decimal
    credited: Decimal

    @property
    def excess(self) -> Decimal:
        return self.credited - self.claimed


@dataclass(frozen=True)
class CreditSummary:
    metric_id: UUID
    claimed_total: Decimal
    claim_credited: Decimal
    pool_credited: Decimal

    @property
    def total_credited(self) -> Decimal:
        return self.claim_credited + self.pool_credited

    @property
    def pool_available(self) -> Decimal:
        return self.claimed_total - self.total_credited


class CreditLedger:
    """
    Validate-then-write service for credit allocations.

    CONCURRENCY GUARANTEES (with CreditStore):
    - Availability is computed from the snapshot taken under the metric lock
    - The write is committed before the lock is released
    - Two racing proposals are serialized; the second sees the first
    """

    def __init__(
        self,
        store: "CreditStore",
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._metrics = metrics or get_metrics()

    @property
    def store(self) -> "CreditStore":
        return self._store

    # ================================================================
    # AVAILABILITY
    # ================================================================

    def available_to_credit(self, metric_id: UUID, claim_id: Optional[UUID] = None) -> Decimal:
        """
        Remaining creditable value, the same cap propose_allocation enforces.

        Without claim_id: sum of the metric's claim values minus ALL its credits.
        With claim_id: claim value minus that claim's credits, capped by the
        pool figure above.
        """
        self._store.require_metric(metric_id)
        allocations = self._store.list_credit_allocations(metric_id)
        pool = pool_available(self._store.list_claims(metric_ids={metric_id}), allocations)
        if claim_id is None:
            return pool
        claim = self._claim_of_metric(self._store.get_claim(claim_id), claim_id, metric_id)
        return min(claim_available(claim, allocations), pool)

    def _claim_of_metric(
        self, claim: Optional[ImpactClaim], claim_id: UUID, metric_id: UUID
    ) -> ImpactClaim:
        if claim is None or claim.metric_id != metric_id:
            raise UnknownReference("claim", claim_id)
        return claim

    @staticmethod
    def _scope_available(
        scope: "MetricScope",
        claim_id: Optional[UUID],
        exclude_id: Optional[UUID] = None,
    ) -> Decimal:
        """
        Capacity for a credit inside a locked scope.

        A claim-level credit also draws on the pool's headroom, so it is
        capped by both.
        """
        allocations = list(scope.allocations.values())
        pool = pool_available(scope.claims.values(), allocations, exclude_id)
        if claim_id is None:
            return pool
        claim = scope.claims.get(claim_id)
        if claim is None:
            raise UnknownReference("claim", claim_id)
        return min(claim_available(claim, allocations, exclude_id), pool)

    # ================================================================
    # WRITES
    # ================================================================

    def propose_allocation(self, candidate: CreditAllocation) -> CreditAllocation:
        """
        Record a new credit, or update an existing one with the same id.

        Raises OverAllocation (carrying the actual available amount) when
        the credit does not fit. Nothing is written in that case.
        """
        started = time.perf_counter()
        self._store.require_donor(candidate.donor_id)
        prior = self._store.get_allocation(candidate.id)
        if prior is not None and prior.metric_id != candidate.metric_id:
            raise InvalidValue(
                f"Allocation {candidate.id} cannot move from metric "
                f"{prior.metric_id} to {candidate.metric_id}"
            )

        with self._store.lock_metric(candidate.metric_id) as scope:
            existing = scope.allocations.get(candidate.id)
            exclude_id = existing.id if existing is not None else None
            available = self._scope_available(scope, candidate.claim_id, exclude_id)

            if candidate.credited_value > available:
                self._metrics.record_allocation_rejected()
                logger.warning(
                    "Allocation rejected",
                    allocation_id=str(candidate.id),
                    metric_id=str(candidate.metric_id),
                    claim_id=str(candidate.claim_id) if candidate.claim_id else None,
                    requested=str(candidate.credited_value),
                    available=str(available),
                )
                raise OverAllocation(
                    available=available,
                    requested=candidate.credited_value,
                    metric_id=candidate.metric_id,
                    claim_id=candidate.claim_id,
                )

            if existing is not None:
                candidate = candidate.model_copy(update={"created_at": existing.created_at})
            saved = scope.save_allocation(candidate)
            scope.commit()

        latency_ms = (time.perf_counter() - started) * 1000
        self._metrics.record_allocation(latency_ms, updated=existing is not None)
        logger.info(
            "Allocation updated" if existing is not None else "Allocation recorded",
            allocation_id=str(saved.id),
            donor_id=str(saved.donor_id),
            metric_id=str(saved.metric_id),
            claim_id=str(saved.claim_id) if saved.claim_id else None,
            credited_value=str(saved.credited_value),
            duration_ms=round(latency_ms, 2),
        )
        return saved

    def update_allocation(self, allocation_id: UUID, **changes: Any) -> CreditAllocation:
        """Change fields of an existing credit; conservation is re-checked."""
        existing = self._store.require_allocation(allocation_id)
        data = existing.model_dump()
        data.update(changes)
        data["id"] = allocation_id
        return self.propose_allocation(CreditAllocation.model_validate(data))

    def delete_allocation(self, allocation_id: UUID) -> CreditAllocation:
        """Delete a credit. Always permitted; frees its capacity."""
        existing = self._store.require_allocation(allocation_id)
        with self._store.lock_metric(existing.metric_id) as scope:
            removed = scope.delete_allocation(allocation_id)
            scope.commit()
        self._metrics.record_allocation_deleted()
        logger.info(
            "Allocation deleted",
            allocation_id=str(allocation_id),
            metric_id=str(removed.metric_id),
            credited_value=str(removed.credited_value),
        )
        return removed

    def revise_claim_value(self, claim_id: UUID, value: Decimal) -> ImpactClaim:
        """
        Change a claim's value without stranding credits.

        Refused with OverAllocation when the new value is below the claim's
        own credits, or when the smaller total would over-credit the pool.
        """
        value = Decimal(value)
        claim = self._store.require_claim(claim_id)
        self._store.require_metric(claim.metric_id).check_value(value)

        with self._store.lock_metric(claim.metric_id) as scope:
            current = scope.claims.get(claim_id)
            if current is None:
                raise UnknownReference("claim", claim_id)
            allocations = list(scope.allocations.values())
            claim_credits = _credited(a for a in allocations if a.claim_id == claim_id)
            if claim_credits > value:
                raise OverAllocation(
                    available=value,
                    requested=claim_credits,
                    metric_id=claim.metric_id,
                    claim_id=claim_id,
                )
            self._check_pool_after(scope, total_delta=value - current.value)
            revised = scope.set_claim_value(claim_id, value)
            scope.commit()

        logger.info(
            "Claim value revised",
            claim_id=str(claim_id),
            previous=str(current.value),
            value=str(value),
        )
        return revised

    def remove_claim(self, claim_id: UUID) -> ImpactClaim:
        """
        Delete a claim with its own credits.

        Refused with OverAllocation when the metric's pool credits would no
        longer fit in what remains.
        """
        claim = self._store.require_claim(claim_id)
        with self._store.lock_metric(claim.metric_id) as scope:
            current = scope.claims.get(claim_id)
            if current is None:
                raise UnknownReference("claim", claim_id)
            own_credits = _credited(a for a in scope.allocations.values() if a.claim_id == claim_id)
            # Removing the claim drops its value and frees its own credits
            self._check_pool_after(scope, total_delta=own_credits - current.value)
            removed = scope.delete_claim(claim_id)
            scope.commit()
        logger.info("Claim removed", claim_id=str(claim_id), metric_id=str(claim.metric_id))
        return removed

    def _check_pool_after(self, scope: "MetricScope", total_delta: Decimal) -> None:
        remaining = pool_available(scope.claims.values(), scope.allocations.values()) + total_delta
        if remaining < 0:
            pool_credits = _credited(scope.allocations_for(None))
            raise OverAllocation(
                available=pool_credits + remaining,
                requested=pool_credits,
                metric_id=scope.metric_id,
                claim_id=None,
            )

    # ================================================================
    # AUDIT
    # ================================================================

    def verify_conservation(self, metric_id: Optional[UUID] = None) -> list[ConservationViolation]:
        """Every claim or pool scope whose credits exceed what was claimed."""
        metric_ids = (
            [metric_id] if metric_id is not None
            else [m.id for m in self._store.list_metrics()]
        )
        violations: list[ConservationViolation] = []
        for mid in metric_ids:
            claims = self._store.list_claims(metric_ids={mid})
            allocations = self._store.list_credit_allocations(mid)
            for claim in claims:
                credited = _credited(a for a in allocations if a.claim_id == claim.id)
                if credited > claim.value:
                    violations.append(ConservationViolation(mid, claim.id, claim.value, credited))
            summary = self._summarize(mid, claims, allocations)
            if summary.pool_credited > summary.claimed_total - summary.claim_credited:
                violations.append(ConservationViolation(
                    mid, None,
                    summary.claimed_total - summary.claim_credited,
                    summary.pool_credited,
                ))
        if violations:
            logger.error("Conservation violations found", count=len(violations))
        return violations

    # ================================================================
    # REPORTING
    # ================================================================

    @staticmethod
    def _summarize(
        metric_id: UUID,
        claims: list[ImpactClaim],
        allocations: list[CreditAllocation],
    ) -> CreditSummary:
        return CreditSummary(
            metric_id=metric_id,
            claimed_total=sum((c.value for c in claims), ZERO),
            claim_credited=_credited(a for a in allocations if a.claim_id is not None),
            pool_credited=_credited(a for a in allocations if a.claim_id is None),
        )

    def metric_summary(self, metric_id: UUID) -> CreditSummary:
        self._store.require_metric(metric_id)
        return self._summarize(
            metric_id,
            self._store.list_claims(metric_ids={metric_id}),
            self._store.list_credit_allocations(metric_id),
        )

    def donor_totals(self, metric_id: UUID) -> dict[UUID, Decimal]:
        """Credited value per donor for one metric."""
        totals: dict[UUID, Decimal] = {}
        for allocation in self._store.list_credit_allocations(metric_id):
            totals[allocation.donor_id] = totals.get(allocation.donor_id, ZERO) + allocation.credited_value
        return totals

    def credits_for_donor(self, donor_id: UUID) -> list[CreditAllocation]:
        self._store.require_donor(donor_id)
        return [a for a in self._store.list_all_allocations() if a.donor_id == donor_id]

    def credits_in_window(
        self,
        window: TemporalWindow,
        donor_id: Optional[UUID] = None,
    ) -> list[CreditAllocation]:
        """
        Credits dated inside the window.

        A credit is dated by its own credit window start, else by its
        claim's first day. Pool credits without a credit window are undated
        and left out.
        """
        results = []
        for allocation in self._store.list_all_allocations():
            if donor_id is not None and allocation.donor_id != donor_id:
                continue
            if allocation.credit_window is not None:
                dated = allocation.credit_window.first_day
            elif allocation.claim_id is not None:
                claim = self._store.get_claim(allocation.claim_id)
                if claim is None:
                    continue
                dated = claim.window.first_day
            else:
                continue
            if window.includes(dated):
                results.append(allocation)
        return results
