"""
Pydantic v2 schemas for the Bids API.

``BidUpdateRequest`` is converted to a ``BidPatch`` from the fields the
client actually sent, so an explicit ``null`` clears a field while an
omitted field is left alone.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from bidflow.models.bid import BidStatus
from bidflow.models.job import JobStatus
from bidflow.services.bidEngine import BidDraft, BidPatch

from .project import ProjectOut


class BidCreateRequest(BaseModel):
    """Request body for submitting a bid on a job."""

    amount_cents: int = Field(gt=0, description="Bid amount in cents")
    proposal: str = Field(min_length=1, description="Provider's pitch to the customer")
    estimated_duration_days: Optional[int] = Field(default=None, ge=1)
    proposed_start_date: Optional[date] = None
    labor_cost_cents: Optional[int] = Field(default=None, ge=0)
    material_cost_cents: Optional[int] = Field(default=None, ge=0)
    equipment_cost_cents: Optional[int] = Field(default=None, ge=0)
    attachments: Optional[list[str]] = Field(
        default=None,
        description="URLs of supporting files already uploaded to storage",
    )

    def to_draft(self) -> BidDraft:
        return BidDraft(**self.model_dump())


class BidUpdateRequest(BaseModel):
    """Request body for changing a PENDING bid. Omitted fields are unchanged."""

    amount_cents: Optional[int] = Field(default=None, gt=0)
    proposal: Optional[str] = Field(default=None, min_length=1)
    estimated_duration_days: Optional[int] = Field(default=None, ge=1)
    proposed_start_date: Optional[date] = None
    labor_cost_cents: Optional[int] = Field(default=None, ge=0)
    material_cost_cents: Optional[int] = Field(default=None, ge=0)
    equipment_cost_cents: Optional[int] = Field(default=None, ge=0)
    attachments: Optional[list[str]] = None

    def to_patch(self) -> BidPatch:
        return BidPatch.from_mapping(self.model_dump(include=self.model_fields_set))


class BidOut(BaseModel):
    """Full bid representation returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    provider_id: uuid.UUID
    amount_cents: int
    currency: str
    proposal: str
    estimated_duration_days: Optional[int] = None
    proposed_start_date: Optional[date] = None
    labor_cost_cents: Optional[int] = None
    material_cost_cents: Optional[int] = None
    equipment_cost_cents: Optional[int] = None
    attachments: Optional[list[str]] = Field(
        default=None,
        validation_alias=AliasChoices("attachments_json", "attachments"),
    )
    status: BidStatus
    viewed_by_customer: bool
    viewed_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class BidAcceptanceOut(BaseModel):
    """Result of accepting a bid: the closed auction and the new project."""

    bid: BidOut
    job_id: uuid.UUID
    job_status: JobStatus
    project: ProjectOut
    rejected_bid_ids: list[uuid.UUID]
