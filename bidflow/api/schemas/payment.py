"""
Pydantic v2 schemas for the Payments API
========================================

Request and response schemas for:
- Saving a payment method and opening a payout account
- Escrow funding
- Milestone and final releases
- Refunds
- Payment history and per-project escrow summaries

All monetary amounts are represented as integers (cents).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from bidflow.models.payment import PaymentStatus, PaymentType


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class FundEscrowRequest(BaseModel):
    """Request body for holding the agreed amount in escrow."""

    project_id: uuid.UUID = Field(description="UUID of the project to fund")
    payment_method_id: str = Field(
        min_length=1,
        description="Processor payment method ID (e.g. pm_xxx) collected by the client",
    )


class ReleaseMilestoneRequest(BaseModel):
    milestone_id: uuid.UUID = Field(description="UUID of an APPROVED milestone")


class ReleaseFinalRequest(BaseModel):
    project_id: uuid.UUID = Field(description="UUID of a project pending approval")


class RefundRequest(BaseModel):
    """Request body for refunding a held or released payment."""

    payment_id: uuid.UUID
    reason: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Free-text reason; defaults to 'requested_by_customer'",
    )


class PayoutAccountRequest(BaseModel):
    country: Optional[str] = Field(
        default=None,
        min_length=2,
        max_length=2,
        description="Two-letter ISO country of the provider; defaults to the platform's payout country",
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class PaymentOut(BaseModel):
    """One ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    amount_cents: int
    currency: str
    type: PaymentType
    status: PaymentStatus
    external_reference: Optional[str] = None
    description: Optional[str] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    refund_of_id: Optional[uuid.UUID] = None
    created_at: datetime


class EscrowSummaryOut(BaseModel):
    """Money position of a project, in cents."""

    model_config = ConfigDict(from_attributes=True)

    agreed_amount_cents: int
    released_cents: int = Field(description="Paid out of escrow, including releases later refunded")
    held_cents: int
    refunded_cents: int
    reversed_cents: int = Field(description="Releases later refunded to the customer")
    outstanding_cents: int = Field(description="Held for the provider and not yet released")
    remaining_cents: int = Field(description="Contract balance not yet released")


class ProjectPaymentsOut(BaseModel):
    payments: list[PaymentOut]
    summary: EscrowSummaryOut


class SetupIntentOut(BaseModel):
    """Handle the client confirms with the processor's SDK to save a card."""

    model_config = ConfigDict(from_attributes=True)

    client_secret: str
    customer_reference: str
    setup_reference: str


class PayoutAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_reference: str
    onboarding_url: str = Field(description="Short-lived link to finish payout onboarding")
    created: bool
