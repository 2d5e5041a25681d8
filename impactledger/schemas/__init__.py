# Data contracts for the Impact Accounting Engine.
# Calendar dates only; timestamps are normalized at this edge.

from .window import TemporalWindow, lift_window_fields, to_calendar_date
from .metric import Metric, MetricCategory, MetricKind
from .claim import ImpactClaim
from .evidence import EvidenceItem, EvidenceType
from .donor import CreditAllocation, Donor

__all__ = [
    # Window
    "TemporalWindow",
    "lift_window_fields",
    "to_calendar_date",
    # Metric
    "Metric",
    "MetricCategory",
    "MetricKind",
    # Claim
    "ImpactClaim",
    # Evidence
    "EvidenceItem",
    "EvidenceType",
    # Donor
    "Donor",
    "CreditAllocation",
]
