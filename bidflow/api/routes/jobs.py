"""
Job API Routes
==============

REST endpoints for posting jobs and bidding on them.

Routes:
  POST   /api/v1/jobs                   -- Post a new job (customer)
  GET    /api/v1/jobs/mine              -- Caller's jobs (paginated)
  GET    /api/v1/jobs/{job_id}          -- Job detail
  POST   /api/v1/jobs/{job_id}/publish  -- Open a draft job for bidding
  POST   /api/v1/jobs/{job_id}/cancel   -- Cancel a job before a bid is accepted
  POST   /api/v1/jobs/{job_id}/bids     -- Submit a bid (provider)
  GET    /api/v1/jobs/{job_id}/bids     -- Bids on a job (owner)
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Query, status

from bidflow.api.deps import Bids, CurrentIdentity
from bidflow.api.responses import Envelope, PageOut, ok, page_out, unwrap_or_raise
from bidflow.api.schemas.bid import BidCreateRequest, BidOut
from bidflow.api.schemas.job import JobCancelRequest, JobCreateRequest, JobOut
from bidflow.core.config import settings
from bidflow.models.job import JobStatus
from bidflow.services.bidEngine import JobDraft

router = APIRouter(prefix="/jobs", tags=["Jobs"])


# ---------------------------------------------------------------------------
# POST /api/v1/jobs -- Post a new job
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=Envelope[JobOut],
    status_code=status.HTTP_201_CREATED,
    summary="Post a new job",
    description=(
        "Creates a job owned by the calling customer. By default the job is "
        "published straight away (OPEN); pass publish=false to keep a DRAFT."
    ),
)
async def create_job(body: JobCreateRequest, identity: CurrentIdentity, bids: Bids):
    job = unwrap_or_raise(await bids.create_job(identity, JobDraft(**body.model_dump())))
    return ok(JobOut.model_validate(job), "Job created")


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/mine -- Caller's jobs
# ---------------------------------------------------------------------------

@router.get(
    "/mine",
    response_model=Envelope[PageOut[JobOut]],
    summary="List my jobs",
)
async def list_my_jobs(
    identity: CurrentIdentity,
    bids: Bids,
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1, le=settings.max_page_size),
):
    result = await bids.list_customer_jobs(identity, status=status_filter, page=page, page_size=page_size)
    return ok(page_out(unwrap_or_raise(result), JobOut))


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/{job_id} -- Job detail
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}",
    response_model=Envelope[JobOut],
    summary="Get job detail",
)
async def get_job(job_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    job = unwrap_or_raise(await bids.get_job(job_id))
    return ok(JobOut.model_validate(job))


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/publish -- Open a draft for bidding
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/publish",
    response_model=Envelope[JobOut],
    summary="Publish a draft job",
)
async def publish_job(job_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    job = unwrap_or_raise(await bids.publish_job(identity, job_id))
    return ok(JobOut.model_validate(job), "Job published")


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/cancel -- Cancel a job
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/cancel",
    response_model=Envelope[JobOut],
    summary="Cancel a job",
    description=(
        "Cancels a job that has not accepted a bid yet. Every pending bid is "
        "rejected. Once a bid is accepted, cancel the project instead."
    ),
)
async def cancel_job(
    job_id: uuid.UUID,
    identity: CurrentIdentity,
    bids: Bids,
    body: Optional[JobCancelRequest] = None,
):
    reason = body.reason if body else None
    job = unwrap_or_raise(await bids.cancel_job(identity, job_id, reason))
    return ok(JobOut.model_validate(job), "Job cancelled")


# ---------------------------------------------------------------------------
# POST /api/v1/jobs/{job_id}/bids -- Submit a bid
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/bids",
    response_model=Envelope[BidOut],
    status_code=status.HTTP_201_CREATED,
    summary="Submit a bid",
    description=(
        "Submits the calling provider's bid on an OPEN or IN_BIDDING job. "
        "A provider may hold one live bid per job."
    ),
)
async def submit_bid(job_id: uuid.UUID, body: BidCreateRequest, identity: CurrentIdentity, bids: Bids):
    bid = unwrap_or_raise(await bids.submit_bid(identity, job_id, body.to_draft()))
    return ok(BidOut.model_validate(bid), "Bid submitted")


# ---------------------------------------------------------------------------
# GET /api/v1/jobs/{job_id}/bids -- Bids on a job
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}/bids",
    response_model=Envelope[list[BidOut]],
    summary="List bids on a job",
    description="Bids ordered from lowest to highest amount. Job owner or admin only.",
)
async def list_job_bids(job_id: uuid.UUID, identity: CurrentIdentity, bids: Bids):
    rows = unwrap_or_raise(await bids.list_job_bids(identity, job_id))
    return ok([BidOut.model_validate(bid) for bid in rows])
