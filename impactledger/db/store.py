"""
Credit Store Abstraction

This module defines the CreditStore interface and provides two implementations:
- InMemoryCreditStore: For development and testing
- PostgresCreditStore: For production with full durability and concurrency safety

The CreditStore is responsible for:
- Persisting metrics, claims, evidence (with claim links), donors and credits
- Exclusive, consistent access to one metric's crediting scope

The CreditLedger retains responsibility for:
- The conservation rules (what may be credited)
- Deciding which staged writes are allowed

TRANSACTION CONTRACT:
Every write that can change creditable capacity goes through lock_metric():

    with store.lock_metric(metric_id) as scope:
        # scope.claims / scope.allocations are a consistent snapshot
        # ... check availability ...
        scope.save_allocation(allocation)
        scope.commit()

The availability check and the write happen under one lock, so two
concurrent credits cannot both pass against a stale total. One lock per
metric covers every claim scope and the pool scope together, because pool
capacity depends on every claim-level credit of the metric.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Generator, Optional
from uuid import UUID

from ..errors import (
    ConcurrencyError,
    DuplicateDonorEmail,
    LockTimeoutError,
    StoreError,
    UnknownReference,
)
from ..observability import get_logger
from ..schemas import (
    CreditAllocation,
    Donor,
    EvidenceItem,
    ImpactClaim,
    Metric,
    TemporalWindow,
)
from ..core.temporal import sort_key

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _claim_matches(
    claim: ImpactClaim,
    metric_ids: Optional[set[UUID]],
    location_ids: Optional[set[UUID]],
    window: Optional[TemporalWindow],
) -> bool:
    if metric_ids is not None and claim.metric_id not in metric_ids:
        return False
    if location_ids is not None and claim.location_id not in location_ids:
        return False
    if window is not None and not window.includes(claim.effective_date):
        return False
    return True


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass
class MetricScope:
    """
    Locked view of one metric's crediting scope.

    claims and allocations are a consistent snapshot taken under the lock.
    Staged writes update the snapshot immediately and reach the store only
    on commit(). Leaving the lock_metric() block without committing rolls
    everything back.

    THREAD SAFETY: transaction state lives here, not on the store, so one
    store instance can serve many threads.
    """
    metric: Metric
    claims: dict[UUID, ImpactClaim]
    allocations: dict[UUID, CreditAllocation]
    _store: "CreditStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _pending: list[tuple[str, Any]] = field(default_factory=list, init=False)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    @property
    def metric_id(self) -> UUID:
        return self.metric.id

    def allocations_for(self, claim_id: Optional[UUID]) -> list[CreditAllocation]:
        """Credits of one claim, or of the pool when claim_id is None."""
        return [a for a in self.allocations.values() if a.claim_id == claim_id]

    def _check_open(self) -> None:
        if self._committed:
            raise ConcurrencyError("Scope already committed")
        if self._rolled_back:
            raise ConcurrencyError("Scope already rolled back")

    def save_allocation(self, allocation: CreditAllocation) -> CreditAllocation:
        self._check_open()
        if allocation.metric_id != self.metric_id:
            raise StoreError(
                f"Allocation {allocation.id} belongs to metric {allocation.metric_id}, "
                f"not {self.metric_id}"
            )
        stamped = allocation.model_copy(update={
            "created_at": allocation.created_at or _now(),
            "updated_at": _now() if allocation.id in self.allocations else allocation.updated_at,
        })
        self.allocations[stamped.id] = stamped
        self._pending.append(("save_allocation", stamped))
        return stamped

    def delete_allocation(self, allocation_id: UUID) -> CreditAllocation:
        self._check_open()
        if allocation_id not in self.allocations:
            raise UnknownReference("allocation", allocation_id)
        removed = self.allocations.pop(allocation_id)
        self._pending.append(("delete_allocation", allocation_id))
        return removed

    def set_claim_value(self, claim_id: UUID, value: Decimal) -> ImpactClaim:
        self._check_open()
        if claim_id not in self.claims:
            raise UnknownReference("claim", claim_id)
        updated = self.claims[claim_id].model_copy(update={"value": value})
        self.claims[claim_id] = updated
        self._pending.append(("set_claim_value", updated))
        return updated

    def delete_claim(self, claim_id: UUID) -> ImpactClaim:
        """Remove a claim with its credits (evidence links go on commit)."""
        self._check_open()
        if claim_id not in self.claims:
            raise UnknownReference("claim", claim_id)
        for allocation in self.allocations_for(claim_id):
            self.allocations.pop(allocation.id)
        removed = self.claims.pop(claim_id)
        self._pending.append(("delete_claim", claim_id))
        return removed

    def commit(self) -> None:
        """Apply every staged write atomically."""
        self._check_open()
        self._store._do_commit(self)
        self._committed = True

    def rollback(self) -> None:
        """Explicitly discard staged writes."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class CreditStore(ABC):
    """
    Abstract base class for credit storage.

    Implementations must ensure:
    1. lock_metric() is exclusive per metric
    2. The scope snapshot is consistent with the lock held
    3. commit() applies all staged writes or none

    CRITICAL: Always use lock_metric() for writes that change capacity:

        with store.lock_metric(metric_id) as scope:
            scope.save_allocation(allocation)
            scope.commit()
    """

    @contextmanager
    @abstractmethod
    def lock_metric(self, metric_id: UUID) -> Generator[MetricScope, None, None]:
        """
        Lock one metric's crediting scope.

        Raises UnknownReference when the metric does not exist and
        LockTimeoutError when the lock cannot be acquired in time.
        """
        pass

    @abstractmethod
    def _do_commit(self, scope: MetricScope) -> None:
        """Internal: apply staged writes. Use scope.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, scope: MetricScope) -> None:
        """Internal: discard staged writes. Use scope.rollback() instead."""
        pass

    # ================================================================
    # METRICS
    # ================================================================

    @abstractmethod
    def add_metric(self, metric: Metric) -> Metric:
        pass

    @abstractmethod
    def update_metric(self, metric: Metric) -> Metric:
        pass

    @abstractmethod
    def get_metric(self, metric_id: UUID) -> Optional[Metric]:
        pass

    @abstractmethod
    def list_metrics(self) -> list[Metric]:
        pass

    @abstractmethod
    def delete_metric(self, metric_id: UUID) -> None:
        """Delete a metric with its claims, credits and evidence references."""
        pass

    # ================================================================
    # CLAIMS
    # ================================================================

    @abstractmethod
    def add_claim(self, claim: ImpactClaim) -> ImpactClaim:
        """Record a claim. The metric must exist and accept the value."""
        pass

    @abstractmethod
    def get_claim(self, claim_id: UUID) -> Optional[ImpactClaim]:
        pass

    @abstractmethod
    def list_claims(
        self,
        metric_ids: Optional[set[UUID]] = None,
        location_ids: Optional[set[UUID]] = None,
        window: Optional[TemporalWindow] = None,
    ) -> list[ImpactClaim]:
        """
        Claims matching all given filters, in chronological order.

        window keeps claims whose effective date falls inside it.
        """
        pass

    def delete_claim(self, claim_id: UUID) -> None:
        """Delete a claim with its credits and evidence links, under the metric lock."""
        claim = self.require_claim(claim_id)
        with self.lock_metric(claim.metric_id) as scope:
            scope.delete_claim(claim_id)
            scope.commit()

    # ================================================================
    # EVIDENCE
    # ================================================================

    @abstractmethod
    def add_evidence(self, evidence: EvidenceItem) -> EvidenceItem:
        """Record evidence; its claim_ids become its initial links."""
        pass

    @abstractmethod
    def get_evidence(self, evidence_id: UUID) -> Optional[EvidenceItem]:
        pass

    @abstractmethod
    def list_evidence(self) -> list[EvidenceItem]:
        pass

    @abstractmethod
    def delete_evidence(self, evidence_id: UUID) -> None:
        pass

    @abstractmethod
    def link_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        pass

    @abstractmethod
    def unlink_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        pass

    @abstractmethod
    def list_evidence_links(self, claim_id: UUID) -> list[EvidenceItem]:
        """Evidence explicitly linked to a claim."""
        pass

    @abstractmethod
    def list_claims_for_evidence(self, evidence_id: UUID) -> list[ImpactClaim]:
        """Claims an evidence item is explicitly linked to."""
        pass

    # ================================================================
    # DONORS
    # ================================================================

    @abstractmethod
    def add_donor(self, donor: Donor) -> Donor:
        """Record a donor. Raises DuplicateDonorEmail on a case-insensitive clash."""
        pass

    @abstractmethod
    def get_donor(self, donor_id: UUID) -> Optional[Donor]:
        pass

    @abstractmethod
    def list_donors(self) -> list[Donor]:
        pass

    @abstractmethod
    def delete_donor(self, donor_id: UUID) -> None:
        """Delete a donor and every credit they hold. Only frees capacity."""
        pass

    # ================================================================
    # CREDIT ALLOCATIONS (read side; writes go through MetricScope)
    # ================================================================

    @abstractmethod
    def list_credit_allocations(
        self,
        metric_id: UUID,
        claim_id: Optional[UUID] = None,
    ) -> list[CreditAllocation]:
        """
        Credits of a metric, or of one claim when claim_id is given.
        """
        pass

    @abstractmethod
    def list_all_allocations(self) -> list[CreditAllocation]:
        pass

    @abstractmethod
    def get_allocation(self, allocation_id: UUID) -> Optional[CreditAllocation]:
        pass

    # ================================================================
    # LOOKUPS THAT RAISE
    # ================================================================

    def require_metric(self, metric_id: UUID) -> Metric:
        metric = self.get_metric(metric_id)
        if metric is None:
            raise UnknownReference("metric", metric_id)
        return metric

    def require_claim(self, claim_id: UUID) -> ImpactClaim:
        claim = self.get_claim(claim_id)
        if claim is None:
            raise UnknownReference("claim", claim_id)
        return claim

    def require_donor(self, donor_id: UUID) -> Donor:
        donor = self.get_donor(donor_id)
        if donor is None:
            raise UnknownReference("donor", donor_id)
        return donor

    def require_evidence(self, evidence_id: UUID) -> EvidenceItem:
        evidence = self.get_evidence(evidence_id)
        if evidence is None:
            raise UnknownReference("evidence", evidence_id)
        return evidence

    def require_allocation(self, allocation_id: UUID) -> CreditAllocation:
        allocation = self.get_allocation(allocation_id)
        if allocation is None:
            raise UnknownReference("allocation", allocation_id)
        return allocation


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryCreditStore(CreditStore):
    """
    In-memory implementation of CreditStore.

    Suitable for:
    - Development
    - Testing
    - Loading a snapshot for offline reports

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    LOCK_TIMEOUT_S = 2.0

    def __init__(self, lock_timeout_s: float = LOCK_TIMEOUT_S):
        self._metrics: dict[UUID, Metric] = {}
        self._claims: dict[UUID, ImpactClaim] = {}
        self._evidence: dict[UUID, EvidenceItem] = {}
        self._links: set[tuple[UUID, UUID]] = set()  # (evidence_id, claim_id)
        self._donors: dict[UUID, Donor] = {}
        self._allocations: dict[UUID, CreditAllocation] = {}

        self._data_lock = threading.RLock()
        self._metric_locks: dict[UUID, threading.Lock] = {}
        self._lock_timeout_s = lock_timeout_s

    def _metric_lock(self, metric_id: UUID) -> threading.Lock:
        with self._data_lock:
            if metric_id not in self._metrics:
                raise UnknownReference("metric", metric_id)
            return self._metric_locks.setdefault(metric_id, threading.Lock())

    @contextmanager
    def lock_metric(self, metric_id: UUID) -> Generator[MetricScope, None, None]:
        """Lock one metric's scope with a per-metric thread lock."""
        lock = self._metric_lock(metric_id)
        if not lock.acquire(timeout=self._lock_timeout_s):
            logger.warning("Metric scope lock timed out", metric_id=str(metric_id))
            raise LockTimeoutError(
                "Metric busy - could not acquire lock. Try again.", metric_id=metric_id
            )

        try:
            with self._data_lock:
                metric = self._metrics.get(metric_id)
                if metric is None:
                    raise UnknownReference("metric", metric_id)
                scope = MetricScope(
                    metric=metric,
                    claims={c.id: c for c in self._claims.values() if c.metric_id == metric_id},
                    allocations={
                        a.id: a for a in self._allocations.values() if a.metric_id == metric_id
                    },
                    _store=self,
                    _conn="in_memory_lock",
                )
            yield scope
        finally:
            lock.release()

    def _do_commit(self, scope: MetricScope) -> None:
        if scope._conn != "in_memory_lock":
            raise ConcurrencyError("_do_commit called outside lock_metric")

        with self._data_lock:
            # Validate everything first so a bad write leaves nothing behind
            for op, arg in scope._pending:
                if op == "save_allocation":
                    if arg.donor_id not in self._donors:
                        raise UnknownReference("donor", arg.donor_id)
                    if arg.claim_id is not None and arg.claim_id not in scope.claims:
                        raise UnknownReference("claim", arg.claim_id)

            for op, arg in scope._pending:
                if op == "save_allocation":
                    self._allocations[arg.id] = arg
                elif op == "delete_allocation":
                    self._allocations.pop(arg, None)
                elif op == "set_claim_value":
                    self._claims[arg.id] = arg
                elif op == "delete_claim":
                    self._remove_claim(arg)
            scope._pending.clear()

    def _do_rollback(self, scope: MetricScope) -> None:
        scope._pending.clear()

    def _remove_claim(self, claim_id: UUID) -> None:
        self._claims.pop(claim_id, None)
        for allocation_id in [a.id for a in self._allocations.values() if a.claim_id == claim_id]:
            del self._allocations[allocation_id]
        self._links = {(e, c) for e, c in self._links if c != claim_id}

    # ================================================================
    # METRICS
    # ================================================================

    def add_metric(self, metric: Metric) -> Metric:
        with self._data_lock:
            if metric.id in self._metrics:
                raise StoreError(f"Metric already exists: {metric.id}")
            self._metrics[metric.id] = metric
        return metric

    def update_metric(self, metric: Metric) -> Metric:
        with self._data_lock:
            if metric.id not in self._metrics:
                raise UnknownReference("metric", metric.id)
            for claim in self._claims.values():
                if claim.metric_id == metric.id:
                    metric.check_value(claim.value)
            self._metrics[metric.id] = metric
        return metric

    def get_metric(self, metric_id: UUID) -> Optional[Metric]:
        return self._metrics.get(metric_id)

    def list_metrics(self) -> list[Metric]:
        return list(self._metrics.values())

    def delete_metric(self, metric_id: UUID) -> None:
        lock = self._metric_lock(metric_id)
        if not lock.acquire(timeout=self._lock_timeout_s):
            raise LockTimeoutError(
                "Metric busy - could not acquire lock. Try again.", metric_id=metric_id
            )
        try:
            with self._data_lock:
                for claim_id in [c.id for c in self._claims.values() if c.metric_id == metric_id]:
                    self._remove_claim(claim_id)
                for allocation_id in [
                    a.id for a in self._allocations.values() if a.metric_id == metric_id
                ]:
                    del self._allocations[allocation_id]
                for evidence in list(self._evidence.values()):
                    if metric_id in evidence.metric_ids:
                        self._evidence[evidence.id] = evidence.model_copy(update={
                            "metric_ids": [m for m in evidence.metric_ids if m != metric_id]
                        })
                del self._metrics[metric_id]
                self._metric_locks.pop(metric_id, None)
        finally:
            lock.release()
        logger.info("Metric deleted", metric_id=str(metric_id))

    # ================================================================
    # CLAIMS
    # ================================================================

    def add_claim(self, claim: ImpactClaim) -> ImpactClaim:
        with self._data_lock:
            metric = self.require_metric(claim.metric_id)
            metric.check_value(claim.value)
            if claim.id in self._claims:
                raise StoreError(f"Claim already exists: {claim.id}")
            if claim.created_at is None:
                claim = claim.model_copy(update={"created_at": _now()})
            self._claims[claim.id] = claim
        return claim

    def get_claim(self, claim_id: UUID) -> Optional[ImpactClaim]:
        return self._claims.get(claim_id)

    def list_claims(
        self,
        metric_ids: Optional[set[UUID]] = None,
        location_ids: Optional[set[UUID]] = None,
        window: Optional[TemporalWindow] = None,
    ) -> list[ImpactClaim]:
        with self._data_lock:
            matches = [
                c for c in self._claims.values()
                if _claim_matches(c, metric_ids, location_ids, window)
            ]
        return sorted(matches, key=lambda c: sort_key(c.window))

    # ================================================================
    # EVIDENCE
    # ================================================================

    def _with_links(self, evidence: EvidenceItem) -> EvidenceItem:
        claim_ids = sorted(
            (c for e, c in self._links if e == evidence.id), key=str
        )
        return evidence.model_copy(update={"claim_ids": claim_ids})

    def add_evidence(self, evidence: EvidenceItem) -> EvidenceItem:
        with self._data_lock:
            for metric_id in evidence.metric_ids:
                self.require_metric(metric_id)
            for claim_id in evidence.claim_ids:
                self.require_claim(claim_id)
            if evidence.id in self._evidence:
                raise StoreError(f"Evidence already exists: {evidence.id}")
            if evidence.created_at is None:
                evidence = evidence.model_copy(update={"created_at": _now()})
            self._evidence[evidence.id] = evidence.model_copy(update={"claim_ids": []})
            for claim_id in evidence.claim_ids:
                self._links.add((evidence.id, claim_id))
            return self._with_links(evidence)

    def get_evidence(self, evidence_id: UUID) -> Optional[EvidenceItem]:
        with self._data_lock:
            evidence = self._evidence.get(evidence_id)
            return self._with_links(evidence) if evidence else None

    def list_evidence(self) -> list[EvidenceItem]:
        with self._data_lock:
            return [self._with_links(e) for e in self._evidence.values()]

    def delete_evidence(self, evidence_id: UUID) -> None:
        with self._data_lock:
            self.require_evidence(evidence_id)
            del self._evidence[evidence_id]
            self._links = {(e, c) for e, c in self._links if e != evidence_id}

    def link_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        with self._data_lock:
            self.require_evidence(evidence_id)
            self.require_claim(claim_id)
            self._links.add((evidence_id, claim_id))

    def unlink_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        with self._data_lock:
            self._links.discard((evidence_id, claim_id))

    def list_evidence_links(self, claim_id: UUID) -> list[EvidenceItem]:
        with self._data_lock:
            self.require_claim(claim_id)
            return [
                self._with_links(self._evidence[e])
                for e, c in sorted(self._links, key=lambda link: str(link[0]))
                if c == claim_id
            ]

    def list_claims_for_evidence(self, evidence_id: UUID) -> list[ImpactClaim]:
        with self._data_lock:
            self.require_evidence(evidence_id)
            claims = [self._claims[c] for e, c in self._links if e == evidence_id]
        return sorted(claims, key=lambda c: sort_key(c.window))

    # ================================================================
    # DONORS
    # ================================================================

    def add_donor(self, donor: Donor) -> Donor:
        with self._data_lock:
            if any(d.email_key == donor.email_key for d in self._donors.values()):
                raise DuplicateDonorEmail(donor.email)
            if donor.id in self._donors:
                raise StoreError(f"Donor already exists: {donor.id}")
            self._donors[donor.id] = donor
        return donor

    def get_donor(self, donor_id: UUID) -> Optional[Donor]:
        return self._donors.get(donor_id)

    def list_donors(self) -> list[Donor]:
        return list(self._donors.values())

    def delete_donor(self, donor_id: UUID) -> None:
        with self._data_lock:
            self.require_donor(donor_id)
            del self._donors[donor_id]
            for allocation_id in [
                a.id for a in self._allocations.values() if a.donor_id == donor_id
            ]:
                del self._allocations[allocation_id]

    # ================================================================
    # CREDIT ALLOCATIONS
    # ================================================================

    def list_credit_allocations(
        self,
        metric_id: UUID,
        claim_id: Optional[UUID] = None,
    ) -> list[CreditAllocation]:
        with self._data_lock:
            return [
                a for a in self._allocations.values()
                if a.metric_id == metric_id and (claim_id is None or a.claim_id == claim_id)
            ]

    def list_all_allocations(self) -> list[CreditAllocation]:
        with self._data_lock:
            return list(self._allocations.values())

    def get_allocation(self, allocation_id: UUID) -> Optional[CreditAllocation]:
        return self._allocations.get(allocation_id)

    def clear(self) -> None:
        """Drop everything (for testing only)."""
        with self._data_lock:
            self._metrics.clear()
            self._claims.clear()
            self._evidence.clear()
            self._links.clear()
            self._donors.clear()
            self._allocations.clear()
            self._metric_locks.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

def _uuid(value: Any) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def _window_columns(window: Optional[TemporalWindow]) -> tuple:
    """(date_represented, date_range_start, date_range_end) for a window."""
    if window is None:
        return (None, None, None)
    if window.is_range:
        return (None, window.start, window.end)
    return (window.day, None, None)


class PostgresCreditStore(CreditStore):
    """
    PostgreSQL implementation of CreditStore.

    Provides:
    - Full ACID guarantees
    - Concurrency safety via FOR UPDATE on the metric row
    - Durability and multi-instance support
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    All transaction state (conn, cursor) is stored in MetricScope, NOT on
    the store, so one store instance can be shared across threads.

    Requirements:
    - Tables created from schema.sql
    - psycopg2 connections from connection_factory
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'
    PGCODE_UNIQUE_VIOLATION = '23505'

    CLAIM_COLUMNS = (
        "id, metric_id, value, date_represented, date_range_start, date_range_end, "
        "label, location_id, created_at"
    )
    ALLOCATION_COLUMNS = (
        "id, donor_id, metric_id, claim_id, credited_value, credited_percentage, "
        "date_range_start, date_range_end, notes, created_at, updated_at"
    )
    EVIDENCE_COLUMNS = (
        "id, title, evidence_type, date_represented, date_range_start, date_range_end, "
        "file_url, description, metric_ids, location_ids, created_at"
    )

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL credit store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the metric row lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ================================================================
    # CONNECTION HELPERS
    # ================================================================

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            cursor.execute(sql, params)
            return cursor.fetchall()
        finally:
            cursor.close()
            conn.close()

    def _execute(self, statements: list[tuple[str, tuple]]) -> None:
        """Run statements in one transaction."""
        conn = self._connection_factory()
        cursor = conn.cursor()
        try:
            for sql, params in statements:
                cursor.execute(sql, params)
            conn.commit()
        except Exception as e:
            conn.rollback()
            if getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION:
                raise StoreError(f"Duplicate row: {e}") from e
            raise
        finally:
            cursor.close()
            conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns:
            "lock" - lock timeout or NOWAIT refusal
            "statement" - statement timeout
            "timeout" - canceled, cause unclear
            None - not a timeout error

        PostgreSQL uses 57014 (query_canceled) for both lock_timeout and
        statement_timeout, so the message decides.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    # ================================================================
    # SCOPED WRITES
    # ================================================================

    @contextmanager
    def lock_metric(self, metric_id: UUID) -> Generator[MetricScope, None, None]:
        """
        Lock the metric row with FOR UPDATE and load its crediting scope.

        The connection and transaction are scoped to this context manager,
        so the snapshot and the commit always share one transaction.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        scope = None

        try:
            cursor.execute("BEGIN")
            # SET LOCAL keeps the timeouts transaction-scoped
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")

            try:
                cursor.execute(
                    "SELECT id, title, unit, category, kind, description "
                    "FROM metrics WHERE id = %s FOR UPDATE",
                    (str(metric_id),),
                )
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    logger.warning("Metric scope lock timed out", metric_id=str(metric_id))
                    raise LockTimeoutError(
                        "Metric busy - could not acquire lock. Try again.",
                        metric_id=metric_id,
                    ) from e
                if kind == "statement":
                    raise StoreError("Query timed out - statement took too long.") from e
                raise

            row = cursor.fetchone()
            if row is None:
                raise UnknownReference("metric", metric_id)
            metric = self._row_to_metric(row)

            cursor.execute(
                f"SELECT {self.CLAIM_COLUMNS} FROM claims WHERE metric_id = %s",
                (str(metric_id),),
            )
            claims = [self._row_to_claim(r) for r in cursor.fetchall()]
            cursor.execute(
                f"SELECT {self.ALLOCATION_COLUMNS} FROM credit_allocations WHERE metric_id = %s",
                (str(metric_id),),
            )
            allocations = [self._row_to_allocation(r) for r in cursor.fetchall()]

            scope = MetricScope(
                metric=metric,
                claims={c.id: c for c in claims},
                allocations={a.id: a for a in allocations},
                _store=self,
                _conn=conn,
                _cursor=cursor,
            )
            yield scope

        finally:
            if scope is None or not scope._committed:
                try:
                    conn.rollback()
                except Exception:
                    pass  # Connection might be broken
            try:
                cursor.close()
            finally:
                conn.close()

    def _do_commit(self, scope: MetricScope) -> None:
        if scope._cursor is None or scope._conn is None:
            raise ConcurrencyError("_do_commit called outside lock_metric")

        cursor = scope._cursor
        for op, arg in scope._pending:
            if op == "save_allocation":
                start, end = (
                    (arg.credit_window.first_day, arg.credit_window.last_day)
                    if arg.credit_window else (None, None)
                )
                cursor.execute(
                    f"""
                    INSERT INTO credit_allocations ({self.ALLOCATION_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        donor_id = EXCLUDED.donor_id,
                        claim_id = EXCLUDED.claim_id,
                        credited_value = EXCLUDED.credited_value,
                        credited_percentage = EXCLUDED.credited_percentage,
                        date_range_start = EXCLUDED.date_range_start,
                        date_range_end = EXCLUDED.date_range_end,
                        notes = EXCLUDED.notes,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        str(arg.id), str(arg.donor_id), str(arg.metric_id),
                        str(arg.claim_id) if arg.claim_id else None,
                        arg.credited_value, arg.credited_percentage,
                        start, end, arg.notes, arg.created_at, arg.updated_at,
                    ),
                )
            elif op == "delete_allocation":
                cursor.execute("DELETE FROM credit_allocations WHERE id = %s", (str(arg),))
            elif op == "set_claim_value":
                cursor.execute(
                    "UPDATE claims SET value = %s WHERE id = %s", (arg.value, str(arg.id))
                )
            elif op == "delete_claim":
                # credit_allocations and evidence_claim_links cascade
                cursor.execute("DELETE FROM claims WHERE id = %s", (str(arg),))

        scope._conn.commit()
        scope._pending.clear()

    def _do_rollback(self, scope: MetricScope) -> None:
        scope._pending.clear()
        if scope._conn is not None:
            try:
                scope._conn.rollback()
            except Exception:
                pass

    # ================================================================
    # ROW MAPPING
    # ================================================================

    def _row_to_metric(self, row: tuple) -> Metric:
        return Metric(
            id=_uuid(row[0]), title=row[1], unit=row[2],
            category=row[3], kind=row[4], description=row[5],
        )

    def _row_to_claim(self, row: tuple) -> ImpactClaim:
        return ImpactClaim(
            id=_uuid(row[0]),
            metric_id=_uuid(row[1]),
            value=row[2],
            window=TemporalWindow.from_parts(day=row[3], start=row[4], end=row[5]),
            label=row[6],
            location_id=_uuid(row[7]),
            created_at=row[8],
        )

    def _row_to_allocation(self, row: tuple) -> CreditAllocation:
        return CreditAllocation(
            id=_uuid(row[0]),
            donor_id=_uuid(row[1]),
            metric_id=_uuid(row[2]),
            claim_id=_uuid(row[3]),
            credited_value=row[4],
            credited_percentage=row[5],
            date_range_start=row[6],
            date_range_end=row[7],
            notes=row[8],
            created_at=row[9],
            updated_at=row[10],
        )

    def _row_to_evidence(self, row: tuple, claim_ids: list[UUID]) -> EvidenceItem:
        return EvidenceItem(
            id=_uuid(row[0]),
            title=row[1],
            type=row[2],
            window=TemporalWindow.from_parts(day=row[3], start=row[4], end=row[5]),
            file_url=row[6],
            description=row[7],
            metric_ids=[_uuid(m) for m in row[8] or []],
            location_ids=[_uuid(loc) for loc in row[9] or []],
            claim_ids=claim_ids,
            created_at=row[10],
        )

    # ================================================================
    # METRICS
    # ================================================================

    def add_metric(self, metric: Metric) -> Metric:
        self._execute([(
            "INSERT INTO metrics (id, title, unit, category, kind, description) "
            "VALUES (%s, %s, %s, %s, %s, %s)",
            (str(metric.id), metric.title, metric.unit, metric.category.value,
             metric.kind.value, metric.description),
        )])
        return metric

    def update_metric(self, metric: Metric) -> Metric:
        self.require_metric(metric.id)
        for claim in self.list_claims(metric_ids={metric.id}):
            metric.check_value(claim.value)
        self._execute([(
            "UPDATE metrics SET title = %s, unit = %s, category = %s, kind = %s, "
            "description = %s WHERE id = %s",
            (metric.title, metric.unit, metric.category.value, metric.kind.value,
             metric.description, str(metric.id)),
        )])
        return metric

    def get_metric(self, metric_id: UUID) -> Optional[Metric]:
        rows = self._query(
            "SELECT id, title, unit, category, kind, description FROM metrics WHERE id = %s",
            (str(metric_id),),
        )
        return self._row_to_metric(rows[0]) if rows else None

    def list_metrics(self) -> list[Metric]:
        rows = self._query(
            "SELECT id, title, unit, category, kind, description FROM metrics ORDER BY title"
        )
        return [self._row_to_metric(r) for r in rows]

    def delete_metric(self, metric_id: UUID) -> None:
        with self.lock_metric(metric_id) as scope:
            cursor = scope._cursor
            cursor.execute(
                "UPDATE evidence SET metric_ids = array_remove(metric_ids, %s::uuid)",
                (str(metric_id),),
            )
            # claims, credit_allocations and links cascade
            cursor.execute("DELETE FROM metrics WHERE id = %s", (str(metric_id),))
            scope.commit()
        logger.info("Metric deleted", metric_id=str(metric_id))

    # ================================================================
    # CLAIMS
    # ================================================================

    def add_claim(self, claim: ImpactClaim) -> ImpactClaim:
        metric = self.require_metric(claim.metric_id)
        metric.check_value(claim.value)
        if claim.created_at is None:
            claim = claim.model_copy(update={"created_at": _now()})
        day, start, end = _window_columns(claim.window)
        self._execute([(
            f"INSERT INTO claims ({self.CLAIM_COLUMNS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)",
            (str(claim.id), str(claim.metric_id), claim.value, day, start, end,
             claim.label, str(claim.location_id) if claim.location_id else None,
             claim.created_at),
        )])
        return claim

    def get_claim(self, claim_id: UUID) -> Optional[ImpactClaim]:
        rows = self._query(
            f"SELECT {self.CLAIM_COLUMNS} FROM claims WHERE id = %s", (str(claim_id),)
        )
        return self._row_to_claim(rows[0]) if rows else None

    def list_claims(
        self,
        metric_ids: Optional[set[UUID]] = None,
        location_ids: Optional[set[UUID]] = None,
        window: Optional[TemporalWindow] = None,
    ) -> list[ImpactClaim]:
        clauses, params = [], []
        if metric_ids is not None:
            clauses.append("metric_id = ANY(%s::uuid[])")
            params.append([str(m) for m in metric_ids])
        if location_ids is not None:
            clauses.append("location_id = ANY(%s::uuid[])")
            params.append([str(loc) for loc in location_ids])
        if window is not None:
            clauses.append(
                "COALESCE(date_range_end, date_represented) BETWEEN %s AND %s"
            )
            params.extend([window.first_day, window.last_day])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._query(
            f"SELECT {self.CLAIM_COLUMNS} FROM claims {where}", tuple(params)
        )
        claims = [self._row_to_claim(r) for r in rows]
        return sorted(claims, key=lambda c: sort_key(c.window))

    # ================================================================
    # EVIDENCE
    # ================================================================

    def _links_for(self, evidence_ids: list[str]) -> dict[UUID, list[UUID]]:
        if not evidence_ids:
            return {}
        rows = self._query(
            "SELECT evidence_id, claim_id FROM evidence_claim_links "
            "WHERE evidence_id = ANY(%s::uuid[]) ORDER BY claim_id",
            (evidence_ids,),
        )
        links: dict[UUID, list[UUID]] = {}
        for evidence_id, claim_id in rows:
            links.setdefault(_uuid(evidence_id), []).append(_uuid(claim_id))
        return links

    def _evidence_rows(self, where: str = "", params: tuple = ()) -> list[EvidenceItem]:
        rows = self._query(
            f"SELECT {self.EVIDENCE_COLUMNS} FROM evidence {where} ORDER BY id", params
        )
        links = self._links_for([str(r[0]) for r in rows])
        return [self._row_to_evidence(r, links.get(_uuid(r[0]), [])) for r in rows]

    def add_evidence(self, evidence: EvidenceItem) -> EvidenceItem:
        for metric_id in evidence.metric_ids:
            self.require_metric(metric_id)
        for claim_id in evidence.claim_ids:
            self.require_claim(claim_id)
        if evidence.created_at is None:
            evidence = evidence.model_copy(update={"created_at": _now()})
        day, start, end = _window_columns(evidence.window)
        statements = [(
            f"INSERT INTO evidence ({self.EVIDENCE_COLUMNS}) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::uuid[], %s::uuid[], %s)",
            (str(evidence.id), evidence.title, evidence.type.value, day, start, end,
             evidence.file_url, evidence.description,
             [str(m) for m in evidence.metric_ids],
             [str(loc) for loc in evidence.location_ids],
             evidence.created_at),
        )]
        for claim_id in evidence.claim_ids:
            statements.append((
                "INSERT INTO evidence_claim_links (evidence_id, claim_id) VALUES (%s, %s) "
                "ON CONFLICT DO NOTHING",
                (str(evidence.id), str(claim_id)),
            ))
        self._execute(statements)
        return evidence

    def get_evidence(self, evidence_id: UUID) -> Optional[EvidenceItem]:
        items = self._evidence_rows("WHERE id = %s", (str(evidence_id),))
        return items[0] if items else None

    def list_evidence(self) -> list[EvidenceItem]:
        return self._evidence_rows()

    def delete_evidence(self, evidence_id: UUID) -> None:
        self.require_evidence(evidence_id)
        self._execute([("DELETE FROM evidence WHERE id = %s", (str(evidence_id),))])

    def link_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        self.require_evidence(evidence_id)
        self.require_claim(claim_id)
        self._execute([(
            "INSERT INTO evidence_claim_links (evidence_id, claim_id) VALUES (%s, %s) "
            "ON CONFLICT DO NOTHING",
            (str(evidence_id), str(claim_id)),
        )])

    def unlink_evidence(self, evidence_id: UUID, claim_id: UUID) -> None:
        self._execute([(
            "DELETE FROM evidence_claim_links WHERE evidence_id = %s AND claim_id = %s",
            (str(evidence_id), str(claim_id)),
        )])

    def list_evidence_links(self, claim_id: UUID) -> list[EvidenceItem]:
        self.require_claim(claim_id)
        return self._evidence_rows(
            "WHERE id IN (SELECT evidence_id FROM evidence_claim_links WHERE claim_id = %s)",
            (str(claim_id),),
        )

    def list_claims_for_evidence(self, evidence_id: UUID) -> list[ImpactClaim]:
        self.require_evidence(evidence_id)
        rows = self._query(
            f"SELECT {self.CLAIM_COLUMNS} FROM claims WHERE id IN "
            "(SELECT claim_id FROM evidence_claim_links WHERE evidence_id = %s)",
            (str(evidence_id),),
        )
        return sorted((self._row_to_claim(r) for r in rows), key=lambda c: sort_key(c.window))

    # ================================================================
    # DONORS
    # ================================================================

    def add_donor(self, donor: Donor) -> Donor:
        rows = self._query(
            "SELECT 1 FROM donors WHERE lower(email) = lower(%s)", (donor.email,)
        )
        if rows:
            raise DuplicateDonorEmail(donor.email)
        self._execute([(
            "INSERT INTO donors (id, name, email, organization) VALUES (%s, %s, %s, %s)",
            (str(donor.id), donor.name, donor.email, donor.organization),
        )])
        return donor

    def get_donor(self, donor_id: UUID) -> Optional[Donor]:
        rows = self._query(
            "SELECT id, name, email, organization FROM donors WHERE id = %s", (str(donor_id),)
        )
        if not rows:
            return None
        row = rows[0]
        return Donor(id=_uuid(row[0]), name=row[1], email=row[2], organization=row[3])

    def list_donors(self) -> list[Donor]:
        rows = self._query("SELECT id, name, email, organization FROM donors ORDER BY name")
        return [
            Donor(id=_uuid(r[0]), name=r[1], email=r[2], organization=r[3]) for r in rows
        ]

    def delete_donor(self, donor_id: UUID) -> None:
        self.require_donor(donor_id)
        # credit_allocations cascade
        self._execute([("DELETE FROM donors WHERE id = %s", (str(donor_id),))])

    # ================================================================
    # CREDIT ALLOCATIONS
    # ================================================================

    def list_credit_allocations(
        self,
        metric_id: UUID,
        claim_id: Optional[UUID] = None,
    ) -> list[CreditAllocation]:
        if claim_id is None:
            rows = self._query(
                f"SELECT {self.ALLOCATION_COLUMNS} FROM credit_allocations "
                "WHERE metric_id = %s ORDER BY created_at, id",
                (str(metric_id),),
            )
        else:
            rows = self._query(
                f"SELECT {self.ALLOCATION_COLUMNS} FROM credit_allocations "
                "WHERE metric_id = %s AND claim_id = %s ORDER BY created_at, id",
                (str(metric_id), str(claim_id)),
            )
        return [self._row_to_allocation(r) for r in rows]

    def list_all_allocations(self) -> list[CreditAllocation]:
        rows = self._query(
            f"SELECT {self.ALLOCATION_COLUMNS} FROM credit_allocations ORDER BY created_at, id"
        )
        return [self._row_to_allocation(r) for r in rows]

    def get_allocation(self, allocation_id: UUID) -> Optional[CreditAllocation]:
        rows = self._query(
            f"SELECT {self.ALLOCATION_COLUMNS} FROM credit_allocations WHERE id = %s",
            (str(allocation_id),),
        )
        return self._row_to_allocation(rows[0]) if rows else None
