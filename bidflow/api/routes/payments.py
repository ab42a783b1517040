"""
Payments API Routes
===================

Processor accounts:
  POST /payments/setup-intent         -- Start saving a card (customer)
  POST /payments/payout-account       -- Open payout account, get onboarding link (provider)

Escrow lifecycle for a project:

  POST /payments/escrow               -- Hold the agreed amount (customer)
  POST /payments/release-milestone    -- Pay an approved milestone
  POST /payments/release-final        -- Pay the remaining balance, complete project
  POST /payments/refund               -- Refund a held or released payment

Reads:
  GET  /payments/history              -- Caller's payments (paginated)
  GET  /payments/project/{project_id} -- Project ledger and escrow summary

Processor declines surface as 402 with the processor's message.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from bidflow.api.deps import CurrentIdentity, Escrow
from bidflow.api.responses import Envelope, PageOut, ok, page_out, unwrap_or_raise
from bidflow.api.schemas.payment import (
    EscrowSummaryOut,
    FundEscrowRequest,
    PaymentOut,
    PayoutAccountOut,
    PayoutAccountRequest,
    ProjectPaymentsOut,
    RefundRequest,
    ReleaseFinalRequest,
    ReleaseMilestoneRequest,
    SetupIntentOut,
)
from bidflow.core.config import settings
from bidflow.models.payment import PaymentStatus, PaymentType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ---------------------------------------------------------------------------
# Processor accounts
# ---------------------------------------------------------------------------

@router.post(
    "/setup-intent",
    response_model=Envelope[SetupIntentOut],
    summary="Start saving a payment method",
    description=(
        "Returns a client secret the client confirms with the processor's SDK. "
        "The resulting payment method ID funds escrow."
    ),
)
async def create_setup_intent(identity: CurrentIdentity, escrow: Escrow):
    setup = unwrap_or_raise(await escrow.create_setup_intent(identity))
    return ok(SetupIntentOut.model_validate(setup))


@router.post(
    "/payout-account",
    response_model=Envelope[PayoutAccountOut],
    summary="Open or resume payout onboarding",
    description=(
        "Opens the provider's payout account on first call and returns a fresh "
        "onboarding link. Releases need a completed payout account."
    ),
)
async def setup_payout_account(
    identity: CurrentIdentity,
    escrow: Escrow,
    body: Optional[PayoutAccountRequest] = None,
):
    onboarding = unwrap_or_raise(await escrow.setup_payout_account(
        identity, country=body.country if body else None
    ))
    message = "Payout account created" if onboarding.created else "Onboarding link issued"
    return ok(PayoutAccountOut.model_validate(onboarding), message)


# ---------------------------------------------------------------------------
# Escrow lifecycle
# ---------------------------------------------------------------------------

@router.post(
    "/escrow",
    response_model=Envelope[PaymentOut],
    status_code=status.HTTP_201_CREATED,
    summary="Fund escrow",
    description=(
        "Authorizes and holds the project's agreed amount on the given payment "
        "method. A PENDING_START project moves to IN_PROGRESS."
    ),
)
async def fund_escrow(body: FundEscrowRequest, identity: CurrentIdentity, escrow: Escrow):
    payment = unwrap_or_raise(await escrow.fund_escrow(identity, body.project_id, body.payment_method_id))
    return ok(PaymentOut.model_validate(payment), "Escrow funded")


@router.post(
    "/release-milestone",
    response_model=Envelope[PaymentOut],
    summary="Release a milestone payment",
)
async def release_milestone(body: ReleaseMilestoneRequest, identity: CurrentIdentity, escrow: Escrow):
    payment = unwrap_or_raise(await escrow.release_milestone_payment(identity, body.milestone_id))
    return ok(PaymentOut.model_validate(payment), "Milestone payment released")


@router.post(
    "/release-final",
    response_model=Envelope[PaymentOut],
    summary="Release the final payment",
    description="Releases whatever remains of the agreed amount and completes the project.",
)
async def release_final(body: ReleaseFinalRequest, identity: CurrentIdentity, escrow: Escrow):
    payment = unwrap_or_raise(await escrow.release_final_payment(identity, body.project_id))
    return ok(PaymentOut.model_validate(payment), "Final payment released")


@router.post(
    "/refund",
    response_model=Envelope[PaymentOut],
    summary="Refund a payment",
    description=(
        "Refunds the unreleased balance of a held deposit, or reverses a "
        "released payment. Returns the REFUND ledger row."
    ),
)
async def refund(body: RefundRequest, identity: CurrentIdentity, escrow: Escrow):
    refund_row = unwrap_or_raise(await escrow.request_refund(identity, body.payment_id, body.reason))
    logger.info("Refund requested via API: payment=%s, user=%s", body.payment_id, identity.user_id)
    return ok(PaymentOut.model_validate(refund_row), "Refund processed")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

@router.get(
    "/history",
    response_model=Envelope[PageOut[PaymentOut]],
    summary="My payment history",
)
async def payment_history(
    identity: CurrentIdentity,
    escrow: Escrow,
    status_filter: Optional[PaymentStatus] = Query(default=None, alias="status"),
    payment_type: Optional[PaymentType] = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = await escrow.payment_history(
        identity,
        status=status_filter,
        payment_type=payment_type,
        page=page,
        page_size=page_size,
    )
    return ok(page_out(unwrap_or_raise(result), PaymentOut))


@router.get(
    "/project/{project_id}",
    response_model=Envelope[ProjectPaymentsOut],
    summary="Project payments and escrow summary",
)
async def project_payments(project_id: uuid.UUID, identity: CurrentIdentity, escrow: Escrow):
    payments, summary = unwrap_or_raise(await escrow.get_project_payments(identity, project_id))
    return ok(ProjectPaymentsOut(
        payments=[PaymentOut.model_validate(p) for p in payments],
        summary=EscrowSummaryOut.model_validate(summary),
    ))
