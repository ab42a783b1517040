"""
Pydantic v2 schemas for the Projects & Milestones API.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from bidflow.models.project import MilestoneStatus, ProjectStatus
from bidflow.services.projectEngine import MilestoneDraft, MilestonePatch


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class ProjectStatusUpdateRequest(BaseModel):
    """Request body for moving a project to IN_PROGRESS or PENDING_APPROVAL."""

    status: ProjectStatus


class ProjectCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class ProjectOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID
    agreed_amount_cents: int
    currency: str
    status: ProjectStatus
    start_date: Optional[datetime] = None
    estimated_end_date: Optional[date] = None
    actual_end_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

class MilestoneCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    amount_cents: int = Field(gt=0, description="Share of the agreed amount, in cents")
    order: Optional[int] = Field(default=None, ge=1, description="Display position, starting at 1")
    due_date: Optional[date] = None

    def to_draft(self) -> MilestoneDraft:
        return MilestoneDraft(**self.model_dump())


class MilestoneUpdateRequest(BaseModel):
    """Request body for editing milestone terms. Omitted fields are unchanged."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    order: Optional[int] = Field(default=None, ge=1)
    due_date: Optional[date] = None

    def to_patch(self) -> MilestonePatch:
        return MilestonePatch.from_mapping(self.model_dump(include=self.model_fields_set))


class MilestoneCompleteRequest(BaseModel):
    completion_photos: Optional[list[str]] = Field(
        default=None,
        description="URLs of photos documenting the finished work",
    )
    notes: Optional[str] = None


class MilestoneRejectRequest(BaseModel):
    reason: str = Field(min_length=1, description="What the provider needs to fix")


class MilestoneOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    title: str
    description: Optional[str] = None
    amount_cents: int
    order: int = Field(validation_alias=AliasChoices("sort_order", "order"))
    status: MilestoneStatus
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    completion_photos: Optional[list[Any]] = Field(
        default=None,
        validation_alias=AliasChoices("completion_photos_json", "completion_photos"),
    )
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    payment_id: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: datetime


class ProjectDetailOut(ProjectOut):
    milestones: list[MilestoneOut] = Field(default_factory=list)
