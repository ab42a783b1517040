"""
Workflow Orchestrator
=====================

Cross-aggregate steps of the marketplace workflow. Accepting a bid closes
the job's auction and opens its project; all of it commits in a single
transaction:

  1. The winning bid moves PENDING -> ACCEPTED (conditional update).
  2. Every other PENDING bid on the job moves to REJECTED.
  3. The job moves to BID_ACCEPTED and records the accepted bid.
  4. A PENDING_START project is created at the bid's amount.
  5. The provider's bids-won counter is incremented.

The job row is locked before any of this runs, so two customers' tabs
accepting different bids at the same moment serialize: the second one
finds the job no longer biddable and gets a CONFLICT. The partial unique
index on accepted bids and the unique ``projects.job_id`` back this up at
the storage layer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from bidflow.core.database import LedgerStore
from bidflow.core.result import DomainError, Result
from bidflow.events import workflowEvents
from bidflow.models.bid import Bid, BidStatus
from bidflow.models.job import Job, JobStatus
from bidflow.models.project import Project
from bidflow.services.auth_service import Identity
from bidflow.services.bidEngine import BidEngine, load_job
from bidflow.services.notificationService import NotificationService
from bidflow.services.profileStats import increment_provider_stats
from bidflow.services.projectEngine import ProjectEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Acceptance:
    """Outcome of a successful bid acceptance."""
    bid: Bid
    job: Job
    project: Project
    rejected_bid_ids: list[uuid.UUID]


class WorkflowOrchestrator:
    """Runs the bid-acceptance step across the bid and project engines."""

    def __init__(
        self,
        store: LedgerStore,
        bid_engine: BidEngine,
        project_engine: ProjectEngine,
        notifications: NotificationService,
    ) -> None:
        self._store = store
        self._bids = bid_engine
        self._projects = project_engine
        self._notifications = notifications

    async def accept_bid(self, identity: Identity, bid_id: uuid.UUID) -> Result[Acceptance]:
        try:
            async with self._store.transaction() as tx:
                bid = await tx.session.get(Bid, bid_id)
                if bid is None:
                    return tx.abort(DomainError.not_found("Bid not found"))

                job = await load_job(tx.session, bid.job_id, for_update=True)
                if job is None:
                    return tx.abort(DomainError.not_found("Job not found"))
                if job.customer_id != identity.user_id:
                    return tx.abort(DomainError.forbidden("Only the job owner can accept bids"))

                # Re-read the bid now that the job is locked
                await tx.session.refresh(bid)
                if bid.status != BidStatus.PENDING:
                    return tx.abort(DomainError.conflict(
                        f"Bid is no longer pending (status: {bid.status.value})"
                    ))
                old_job_status = job.status

                closed = await self._bids.close_auction(tx, job, bid)
                if not closed.ok:
                    return closed
                rejected_bid_ids = closed.unwrap()

                project = await self._projects.create_project(tx, job, bid)
                await increment_provider_stats(tx.session, bid.provider_id, bids_won=1)
                self._notifications.bid_accepted(tx, job, bid, project)
        except IntegrityError:
            logger.warning("Concurrent acceptance rejected: bid=%s", bid_id)
            return Result.failure(DomainError.conflict("This job is no longer available"))

        logger.info(
            "Bid accepted: bid=%s, job=%s, project=%s, rejected=%d",
            bid.id,
            job.id,
            project.id,
            len(rejected_bid_ids),
        )
        workflowEvents.emit_bid_accepted(bid.id, job.id, project.id, identity.user_id, rejected_bid_ids)
        workflowEvents.emit_job_status_changed(
            job.id, old_job_status.value, JobStatus.BID_ACCEPTED.value, identity.user_id
        )
        workflowEvents.emit_project_created(project.id, job.id, project.agreed_amount_cents)
        return Result.success(Acceptance(
            bid=bid,
            job=job,
            project=project,
            rejected_bid_ids=rejected_bid_ids,
        ))
