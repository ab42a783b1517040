"""
Pydantic v2 schemas for the Jobs API
====================================

Request and response schemas for posting, publishing and cancelling jobs.
All monetary amounts are integers in cents.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from bidflow.models.job import JobStatus


class JobCreateRequest(BaseModel):
    """Request body for posting a new job."""

    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1, max_length=100)
    starting_bid_cents: int = Field(gt=0, description="Opening price in cents")
    max_budget_cents: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = Field(
        default=None,
        min_length=3,
        max_length=3,
        description="Three-letter ISO currency code; defaults to the service currency",
    )
    publish: bool = Field(
        default=True,
        description="Open the job for bidding immediately instead of saving a draft",
    )


class JobCancelRequest(BaseModel):
    """Request body for cancelling a job."""

    reason: Optional[str] = Field(default=None, max_length=1000)


class JobOut(BaseModel):
    """Full job representation returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    customer_id: uuid.UUID
    title: str
    description: str
    category: str
    starting_bid_cents: int
    max_budget_cents: Optional[int] = None
    currency: str
    status: JobStatus
    accepted_bid_id: Optional[uuid.UUID] = None
    published_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
