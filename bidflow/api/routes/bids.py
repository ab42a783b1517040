"""
Bid API Routes
==============

Routes:
  GET    /api/v1/bids/my-bids             -- Caller's bids (provider, paginated)
  GET    /api/v1/bids/{bid_id}            -- Bid detail (sets the read receipt)
  PUT    /api/v1/bids/{bid_id}            -- Edit a pending bid
  POST   /api/v1/bids/{bid_id}/withdraw   -- Withdraw a pending bid
  POST   /api/v1/bids/{bid_id}/accept     -- Accept a bid and open its project
  POST   /api/v1/bids/{bid_id}/reject     -- Reject a pending bid
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Query

from bidflow.api.deps import Bids, CurrentIdentity, Orchestrator
from bidflow.api.responses import Envelope, PageOut, ok, page_out, unwrap_or_raise
from bidflow.api.schemas.bid import BidAcceptanceOut, BidOut, BidUpdateRequest
from bidflow.api.schemas.project import ProjectOut
from bidflow.core.config import settings
from bidflow.models.bid import BidStatus

router = APIRouter(prefix="/bids", tags=["Bids"])


@router.get(
    "/my-bids",
    response_model=Envelope[PageOut[BidOut]],
    summary="List my bids",
)
async def list_my_bids(
    identity: CurrentIdentity,
    bids: Bids,
    status_filter: Optional[BidStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = await bids.list_provider_bids(identity, status=status_filter, page=page, page_size=page_size)
    return ok(page_out(unwrap_or_raise(result), BidOut))


@router.get(
    "/{bid_id}",
    response_model=Envelope[BidOut],
    summary="Get bid detail",
    description="Visible to the bidder, the job owner and admins. The job owner's first view marks the bid as seen.",
)
async def get_bid(bid_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    bid = unwrap_or_raise(await bids.get_bid(identity, bid_id))
    return ok(BidOut.model_validate(bid))


@router.put(
    "/{bid_id}",
    response_model=Envelope[BidOut],
    summary="Update a pending bid",
)
async def update_bid(bid_id: uuid.UUID, body: BidUpdateRequest, identity: CurrentIdentity, bids: Bids):
    bid = unwrap_or_raise(await bids.update_bid(identity, bid_id, body.to_patch()))
    return ok(BidOut.model_validate(bid), "Bid updated")


@router.post(
    "/{bid_id}/withdraw",
    response_model=Envelope[BidOut],
    summary="Withdraw a pending bid",
)
async def withdraw_bid(bid_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    bid = unwrap_or_raise(await bids.withdraw_bid(identity, bid_id))
    return ok(BidOut.model_validate(bid), "Bid withdrawn")


# ---------------------------------------------------------------------------
# POST /api/v1/bids/{bid_id}/accept -- Close the auction
# ---------------------------------------------------------------------------

@router.post(
    "/{bid_id}/accept",
    response_model=Envelope[BidAcceptanceOut],
    summary="Accept a bid",
    description=(
        "Accepts the bid, rejects every other pending bid on the job, moves "
        "the job to BID_ACCEPTED and creates the project at the bid amount. "
        "Returns 409 if another bid was accepted first."
    ),
)
async def accept_bid(bid_id: uuid.UUID, identity: CurrentIdentity, orchestrator: Orchestrator):
    acceptance = unwrap_or_raise(await orchestrator.accept_bid(identity, bid_id))
    return ok(
        BidAcceptanceOut(
            bid=BidOut.model_validate(acceptance.bid),
            job_id=acceptance.job.id,
            job_status=acceptance.job.status,
            project=ProjectOut.model_validate(acceptance.project),
            rejected_bid_ids=acceptance.rejected_bid_ids,
        ),
        "Bid accepted",
    )


@router.post(
    "/{bid_id}/reject",
    response_model=Envelope[BidOut],
    summary="Reject a pending bid",
)
async def reject_bid(bid_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    bid = unwrap_or_raise(await bids.reject_bid(identity, bid_id))
    return ok(BidOut.model_validate(bid), "Bid rejected")
