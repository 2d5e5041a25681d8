"""
Metric Schema

A Metric is the thing being counted. Claims are observations against it;
credits attribute slices of its claimed value to donors.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..errors import InvalidValue


class MetricCategory(str, Enum):
    """Where the metric sits in the logic model."""
    INPUT = "input"         # Resources spent
    OUTPUT = "output"       # Direct products of activity
    IMPACT = "impact"       # Change that resulted


class MetricKind(str, Enum):
    """Numeric kind. Percentages are bounded to 0-100."""
    COUNT = "count"
    PERCENTAGE = "percentage"


PERCENTAGE_CEILING = Decimal("100")


class Metric(BaseModel):
    """
    A named, unit-labelled quantity to track.

    Deleting a metric cascades to its claims, credits and evidence links.
    """
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier"
    )
    title: str = Field(
        ...,
        min_length=1,
        description="Display name, e.g. 'People Trained'"
    )
    unit: str = Field(
        default="",
        description="Unit label, e.g. 'people'"
    )
    category: MetricCategory = Field(
        default=MetricCategory.OUTPUT,
        description="Input, output or impact"
    )
    kind: MetricKind = Field(
        default=MetricKind.COUNT,
        description="Plain count or percentage"
    )
    description: Optional[str] = Field(
        default=None,
        description="Free-text description"
    )

    @property
    def is_percentage(self) -> bool:
        return self.kind == MetricKind.PERCENTAGE

    def check_value(self, value: Decimal) -> None:
        """Reject a claim value this metric cannot hold."""
        if value < 0:
            raise InvalidValue(f"Claim value {value} is negative")
        if self.is_percentage and value > PERCENTAGE_CEILING:
            raise InvalidValue(
                f"Claim value {value} exceeds 100 on percentage metric '{self.title}'"
            )
