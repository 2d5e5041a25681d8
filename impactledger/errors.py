"""
Error Taxonomy for the Impact Accounting Engine

Every failure the engine reports to its caller is one of these.
They are local validation failures: raised to the immediate caller,
never retried automatically.

- InvalidWindow: a record has neither a single date nor a valid range
- OverAllocation: a credit would exceed what is left to credit
- UnknownReference: an id points at nothing the store knows about
- InvalidValue: a claim value is out of range for its metric

Storage failures live under StoreError.
"""

from decimal import Decimal
from typing import Any, Optional


class EngineError(Exception):
    """Base exception for engine errors."""
    pass


class InvalidWindow(EngineError):
    """
    Raised when a temporal window cannot be built.

    A window needs either a single date or a start/end range with
    start <= end. Anything else is rejected, never coerced.
    """

    def __init__(
        self,
        message: str,
        day: Any = None,
        start: Any = None,
        end: Any = None,
    ):
        super().__init__(message)
        self.day = day
        self.start = start
        self.end = end


class OverAllocation(EngineError):
    """
    Raised when a credit would exceed available capacity at its scope.

    Carries the actual available amount so the caller can offer a
    corrected value.
    """

    def __init__(
        self,
        available: Decimal,
        requested: Decimal,
        metric_id: Any = None,
        claim_id: Any = None,
    ):
        scope = f"claim {claim_id}" if claim_id is not None else f"metric {metric_id} pool"
        super().__init__(
            f"Cannot credit {requested} to {scope}: only {available} available"
        )
        self.available = available
        self.requested = requested
        self.metric_id = metric_id
        self.claim_id = claim_id

    @property
    def is_pool(self) -> bool:
        """True when the rejected scope is the metric-level pool."""
        return self.claim_id is None


class UnknownReference(EngineError):
    """Raised when a metric, claim, donor, evidence or allocation id does not exist."""

    def __init__(self, kind: str, reference_id: Any):
        super().__init__(f"Unknown {kind}: {reference_id}")
        self.kind = kind
        self.reference_id = reference_id


class InvalidValue(EngineError):
    """Raised when a claim value is negative or exceeds 100 on a percentage metric."""
    pass


# ============================================================
# STORAGE
# ============================================================

class StoreError(Exception):
    """Base exception for credit store errors."""
    pass


class ConcurrencyError(StoreError):
    """Raised when a scoped write is used outside its lock."""
    pass


class LockTimeoutError(StoreError):
    """Raised when a metric scope lock cannot be acquired in time."""

    def __init__(self, message: str, metric_id: Optional[Any] = None):
        super().__init__(message)
        self.metric_id = metric_id


class DuplicateDonorEmail(StoreError):
    """Raised when a donor email is already registered (case-insensitive)."""

    def __init__(self, email: str):
        super().__init__(f"Donor email already registered: {email}")
        self.email = email
