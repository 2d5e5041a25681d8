"""
Impact Claim Schema

A claim is one observation of progress against a metric:
"120 people trained between March 1-15".

Rules:
- value >= 0 (and <= 100 on percentage metrics, checked against the metric)
- exactly one temporal representation: a single date or a start <= end range
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..errors import InvalidValue
from .window import TemporalWindow, lift_window_fields


class ImpactClaim(BaseModel):
    """
    One observation against a Metric.

    Accepts either a `window` or the flat columns `date_represented`,
    `date_range_start` and `date_range_end`. A record with neither raises
    InvalidWindow.
    """
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier"
    )
    metric_id: UUID = Field(
        ...,
        description="The metric this claim observes"
    )
    value: Decimal = Field(
        ...,
        description="Claimed quantity"
    )
    window: TemporalWindow = Field(
        ...,
        description="When the claimed progress happened"
    )
    label: Optional[str] = Field(
        default=None,
        description="Optional free-text label or note"
    )
    location_id: Optional[UUID] = Field(
        default=None,
        description="Optional location reference"
    )
    created_at: Optional[datetime] = Field(
        default=None,
        description="When the claim was recorded"
    )

    @model_validator(mode="before")
    @classmethod
    def lift_flat_dates(cls, data: Any) -> Any:
        return lift_window_fields(data)

    @field_validator("value")
    @classmethod
    def value_not_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise InvalidValue(f"Claim value {v} is negative")
        return v

    @property
    def effective_date(self):
        return self.window.effective_date
