"""
Donor and Credit Allocation Schemas

A CreditAllocation attributes part of a metric's claimed value to a donor,
either against one claim or against the metric-level pool (claim_id = None).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..errors import InvalidValue
from .window import TemporalWindow, lift_window_fields


class Donor(BaseModel):
    """A funder. Email is unique per scope, compared case-insensitively."""
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier"
    )
    name: str = Field(
        ...,
        min_length=1,
        description="Donor display name"
    )
    email: str = Field(
        ...,
        min_length=3,
        description="Contact email"
    )
    organization: Optional[str] = Field(
        default=None,
        description="Organization the donor gives through"
    )

    @field_validator("email")
    @classmethod
    def email_has_at(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v

    @property
    def email_key(self) -> str:
        return self.email.casefold()


class CreditAllocation(BaseModel):
    """
    A slice of claimed value credited to a donor.

    credited_percentage is informational only and never enters the
    conservation arithmetic.
    """
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier"
    )
    donor_id: UUID = Field(
        ...,
        description="Donor receiving credit"
    )
    metric_id: UUID = Field(
        ...,
        description="Metric whose value is credited"
    )
    claim_id: Optional[UUID] = Field(
        default=None,
        description="Claim credited; None credits the metric-level pool"
    )
    credited_value: Decimal = Field(
        ...,
        description="Amount of claimed value credited"
    )
    credited_percentage: Optional[Decimal] = Field(
        default=None,
        ge=0,
        le=100,
        description="Informational share, 0-100"
    )
    credit_window: Optional[TemporalWindow] = Field(
        default=None,
        description="Optional span the credit refers to"
    )
    notes: Optional[str] = Field(
        default=None,
        description="Free-text notes"
    )
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="before")
    @classmethod
    def lift_flat_dates(cls, data: Any) -> Any:
        return lift_window_fields(data, target="credit_window", day_key=None, required=False)

    @field_validator("credited_value")
    @classmethod
    def value_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise InvalidValue(f"Credited value must be positive, got {v}")
        return v

    @property
    def is_pool(self) -> bool:
        return self.claim_id is None
