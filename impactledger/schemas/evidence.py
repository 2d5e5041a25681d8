"""
Evidence Schema

Evidence is supporting material for claims. Which claims it supports is
curated by the user through explicit links; dates alone decide nothing.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

from .window import TemporalWindow, lift_window_fields


class EvidenceType(str, Enum):
    """What kind of material this is."""
    VISUAL_PROOF = "visual_proof"       # Photos, video
    DOCUMENTATION = "documentation"     # Reports, sign-in sheets
    TESTIMONY = "testimony"             # Participant statements
    FINANCIALS = "financials"           # Receipts, ledgers


class EvidenceItem(BaseModel):
    """
    Supporting material with its own temporal window.

    claim_ids is the user-curated set of claims this item is linked to.
    """
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique identifier"
    )
    title: str = Field(
        default="",
        description="Short title"
    )
    type: EvidenceType = Field(
        default=EvidenceType.DOCUMENTATION,
        description="Kind of evidence"
    )
    window: TemporalWindow = Field(
        ...,
        description="The span of time this evidence attests to"
    )
    file_url: Optional[str] = Field(
        default=None,
        description="Reference to the stored file"
    )
    description: Optional[str] = Field(
        default=None,
        description="Free-text description"
    )
    metric_ids: list[UUID] = Field(
        default_factory=list,
        description="Metrics this evidence supports"
    )
    location_ids: list[UUID] = Field(
        default_factory=list,
        description="Locations this evidence covers"
    )
    claim_ids: list[UUID] = Field(
        default_factory=list,
        description="Claims this evidence is explicitly linked to"
    )
    created_at: Optional[datetime] = Field(
        default=None,
        description="When the evidence was recorded"
    )

    @model_validator(mode="before")
    @classmethod
    def lift_flat_dates(cls, data: Any) -> Any:
        return lift_window_fields(data)
