"""
Bid Engine
==========

Owns jobs and bids: posting and cancelling jobs, the bid lifecycle
(submit, update, withdraw, reject), the customer's read receipt, and the
bid listings. Accepting a bid spans several aggregates and lives in
``workflowOrchestrator``.

Every public method returns a ``Result``. Expected failures are returned as
``DomainError`` values; storage uniqueness violations raised inside a
transaction are reported as ``CONFLICT``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bidflow.core.database import LedgerStore, TransactionScope
from bidflow.core.patch import UNSET, Patch
from bidflow.core.result import DomainError, Page, Result
from bidflow.events import workflowEvents
from bidflow.models.base import utcnow
from bidflow.models.bid import Bid, BidStatus
from bidflow.models.job import Job, JobStatus
from bidflow.services.auth_service import Identity, Role
from bidflow.services.jobStateManager import (
    ActorType,
    TransitionResult,
    is_biddable,
    validate_transition,
)
from bidflow.services.notificationService import NotificationService
from bidflow.services.profileStats import increment_provider_stats

logger = logging.getLogger(__name__)

# Statuses from which the job itself, rather than its project, is cancelled
_JOB_CANCELLABLE = frozenset({JobStatus.DRAFT, JobStatus.OPEN, JobStatus.IN_BIDDING})


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobDraft:
    title: str
    description: str
    category: str
    starting_bid_cents: int
    max_budget_cents: int | None = None
    currency: str | None = None
    publish: bool = True


@dataclass(frozen=True)
class BidDraft:
    amount_cents: int
    proposal: str
    estimated_duration_days: int | None = None
    proposed_start_date: date | None = None
    labor_cost_cents: int | None = None
    material_cost_cents: int | None = None
    equipment_cost_cents: int | None = None
    attachments: list[str] | None = None


@dataclass(frozen=True)
class BidPatch(Patch):
    """Fields a provider may change on a PENDING bid."""
    amount_cents: Any = UNSET
    proposal: Any = UNSET
    estimated_duration_days: Any = UNSET
    proposed_start_date: Any = UNSET
    labor_cost_cents: Any = UNSET
    material_cost_cents: Any = UNSET
    equipment_cost_cents: Any = UNSET
    attachments: Any = UNSET


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

async def load_job(
    session: AsyncSession,
    job_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Job | None:
    """Load a job, optionally locking the row for the rest of the transaction."""
    stmt = select(Job).where(Job.id == job_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


def transition_job(
    job: Job,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate and apply a job status change, stamping lifecycle dates once."""
    check = validate_transition(job.status, new_status, actor_type)
    if not check.allowed:
        return check

    now = utcnow()
    job.status = new_status
    if new_status == JobStatus.OPEN and job.published_at is None:
        job.published_at = now
    elif new_status == JobStatus.CANCELLED and job.cancelled_at is None:
        job.cancelled_at = now
    return check


def _validate_money(name: str, value: Any, *, required: bool) -> DomainError | None:
    if value is None:
        return DomainError.validation(f"{name} is required") if required else None
    if isinstance(value, bool) or not isinstance(value, int):
        return DomainError.validation(f"{name} must be an integer amount in cents")
    if value < 0 or (required and value == 0):
        return DomainError.validation(f"{name} must be positive")
    return None


def _validate_bid_fields(values: dict[str, Any], *, partial: bool) -> DomainError | None:
    if not partial or "amount_cents" in values:
        error = _validate_money("Bid amount", values.get("amount_cents"), required=True)
        if error:
            return error
    if not partial or "proposal" in values:
        proposal = values.get("proposal")
        if not proposal or not str(proposal).strip():
            return DomainError.validation("A proposal is required")
    for key, label in (
        ("labor_cost_cents", "Labor cost"),
        ("material_cost_cents", "Material cost"),
        ("equipment_cost_cents", "Equipment cost"),
    ):
        error = _validate_money(label, values.get(key), required=False)
        if error:
            return error
    duration = values.get("estimated_duration_days")
    if duration is not None and duration <= 0:
        return DomainError.validation("Estimated duration must be at least one day")
    return None


def _clamp_page(page: int, page_size: int, max_page_size: int) -> tuple[int, int]:
    return max(page, 1), min(max(page_size, 1), max_page_size)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BidEngine:
    """Job and bid operations against a ``LedgerStore``."""

    def __init__(
        self,
        store: LedgerStore,
        notifications: NotificationService,
        *,
        default_currency: str = "usd",
        max_page_size: int = 100,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._default_currency = default_currency
        self._max_page_size = max_page_size

    # -----------------------------------------------------------------------
    # Jobs
    # -----------------------------------------------------------------------

    async def create_job(self, identity: Identity, draft: JobDraft) -> Result[Job]:
        if identity.role != Role.CUSTOMER:
            return Result.failure(DomainError.forbidden("Only customers can post jobs"))
        if not draft.title or not draft.title.strip():
            return Result.failure(DomainError.validation("Title is required"))
        if not draft.description or not draft.description.strip():
            return Result.failure(DomainError.validation("Description is required"))
        if not draft.category or not draft.category.strip():
            return Result.failure(DomainError.validation("Category is required"))
        error = _validate_money("Starting bid", draft.starting_bid_cents, required=True)
        if error:
            return Result.failure(error)
        if draft.max_budget_cents is not None and draft.max_budget_cents < draft.starting_bid_cents:
            return Result.failure(
                DomainError.validation("Maximum budget cannot be below the starting bid")
            )

        async with self._store.transaction() as tx:
            job = Job(
                customer_id=identity.user_id,
                title=draft.title.strip(),
                description=draft.description.strip(),
                category=draft.category.strip(),
                starting_bid_cents=draft.starting_bid_cents,
                max_budget_cents=draft.max_budget_cents,
                currency=(draft.currency or self._default_currency).lower(),
                status=JobStatus.DRAFT,
            )
            if draft.publish:
                transition_job(job, JobStatus.OPEN, identity.actor_type)
            tx.session.add(job)
            await tx.session.flush()

        logger.info("Job created: id=%s, customer=%s, status=%s", job.id, job.customer_id, job.status.value)
        workflowEvents.emit_job_created(job.id, job.customer_id, job.status.value)
        return Result.success(job)

    async def get_job(self, job_id: uuid.UUID) -> Result[Job]:
        async with self._store.session() as session:
            job = await session.get(Job, job_id)
        if job is None:
            return Result.failure(DomainError.not_found("Job not found"))
        return Result.success(job)

    async def list_customer_jobs(
        self,
        identity: Identity,
        *,
        status: JobStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Result[Page[Job]]:
        page, page_size = _clamp_page(page, page_size, self._max_page_size)
        conditions = [Job.customer_id == identity.user_id]
        if status is not None:
            conditions.append(Job.status == status)

        async with self._store.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(Job).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(Job)
                .where(*conditions)
                .order_by(Job.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
        return Result.success(Page(items=list(rows), total=total, page=page, page_size=page_size))

    async def publish_job(self, identity: Identity, job_id: uuid.UUID) -> Result[Job]:
        async with self._store.transaction() as tx:
            job = await load_job(tx.session, job_id, for_update=True)
            if job is None:
                return tx.abort(DomainError.not_found("Job not found"))
            if job.customer_id != identity.user_id:
                return tx.abort(DomainError.forbidden("Only the job owner can publish this job"))
            check = transition_job(job, JobStatus.OPEN, identity.actor_type)
            if not check.allowed:
                return tx.abort(DomainError.conflict(check.reason or "Job cannot be published"))

        workflowEvents.emit_job_status_changed(job.id, JobStatus.DRAFT.value, JobStatus.OPEN.value, identity.user_id)
        return Result.success(job)

    async def cancel_job(
        self,
        identity: Identity,
        job_id: uuid.UUID,
        reason: str | None = None,
    ) -> Result[Job]:
        """Cancel a job that has not accepted a bid; pending bids are rejected."""
        rejected: list[tuple[uuid.UUID, uuid.UUID]] = []
        async with self._store.transaction() as tx:
            job = await load_job(tx.session, job_id, for_update=True)
            if job is None:
                return tx.abort(DomainError.not_found("Job not found"))
            if job.customer_id != identity.user_id and not identity.is_admin:
                return tx.abort(DomainError.forbidden("Only the job owner can cancel this job"))
            if job.status not in _JOB_CANCELLABLE:
                return tx.abort(DomainError.conflict(
                    f"Job in '{job.status.value}' status cannot be cancelled directly. "
                    f"Cancel the project instead."
                ))
            old_status = job.status
            check = transition_job(job, JobStatus.CANCELLED, identity.actor_type)
            if not check.allowed:
                return tx.abort(DomainError.conflict(check.reason or "Job cannot be cancelled"))
            job.cancellation_reason = reason

            rejected = await self._reject_pending_bids(tx, job)

        logger.info("Job cancelled: id=%s, by=%s, rejected_bids=%d", job.id, identity.user_id, len(rejected))
        workflowEvents.emit_job_status_changed(job.id, old_status.value, JobStatus.CANCELLED.value, identity.user_id)
        workflowEvents.emit_job_cancelled(job.id, identity.user_id, reason)
        return Result.success(job)

    # -----------------------------------------------------------------------
    # Bids
    # -----------------------------------------------------------------------

    async def submit_bid(
        self,
        identity: Identity,
        job_id: uuid.UUID,
        draft: BidDraft,
    ) -> Result[Bid]:
        if identity.role != Role.PROVIDER:
            return Result.failure(DomainError.forbidden("Only providers can submit bids"))
        error = _validate_bid_fields(vars(draft), partial=False)
        if error:
            return Result.failure(error)

        opened_bidding = False
        try:
            async with self._store.transaction() as tx:
                job = await load_job(tx.session, job_id, for_update=True)
                if job is None:
                    return tx.abort(DomainError.not_found("Job not found"))
                if job.customer_id == identity.user_id:
                    return tx.abort(DomainError.forbidden("You cannot bid on your own job"))
                if not is_biddable(job.status):
                    return tx.abort(DomainError.conflict(
                        f"Job is not accepting bids (status: {job.status.value})"
                    ))

                existing = (await tx.session.execute(
                    select(Bid.id).where(
                        Bid.job_id == job.id,
                        Bid.provider_id == identity.user_id,
                        Bid.status != BidStatus.WITHDRAWN,
                    )
                )).first()
                if existing is not None:
                    return tx.abort(DomainError.conflict("You have already submitted a bid for this job"))

                bid = Bid(
                    job_id=job.id,
                    provider_id=identity.user_id,
                    amount_cents=draft.amount_cents,
                    currency=job.currency,
                    proposal=draft.proposal.strip(),
                    estimated_duration_days=draft.estimated_duration_days,
                    proposed_start_date=draft.proposed_start_date,
                    labor_cost_cents=draft.labor_cost_cents,
                    material_cost_cents=draft.material_cost_cents,
                    equipment_cost_cents=draft.equipment_cost_cents,
                    attachments_json=draft.attachments,
                    status=BidStatus.PENDING,
                    viewed_by_customer=False,
                )
                tx.session.add(bid)

                # First bid opens the auction; later bids leave the status alone
                if job.status == JobStatus.OPEN:
                    transition_job(job, JobStatus.IN_BIDDING)
                    opened_bidding = True

                await tx.session.flush()
                await increment_provider_stats(tx.session, identity.user_id, bids_submitted=1)
                self._notifications.new_bid(tx, job, bid)
        except IntegrityError:
            logger.warning("Duplicate bid rejected: job=%s, provider=%s", job_id, identity.user_id)
            return Result.failure(DomainError.conflict("You have already submitted a bid for this job"))

        logger.info(
            "Bid submitted: id=%s, job=%s, provider=%s, amount=%d",
            bid.id,
            job_id,
            identity.user_id,
            bid.amount_cents,
        )
        workflowEvents.emit_bid_submitted(bid.id, job_id, identity.user_id, bid.amount_cents)
        if opened_bidding:
            workflowEvents.emit_job_status_changed(job_id, JobStatus.OPEN.value, JobStatus.IN_BIDDING.value)
        return Result.success(bid)

    async def update_bid(
        self,
        identity: Identity,
        bid_id: uuid.UUID,
        patch: BidPatch,
    ) -> Result[Bid]:
        changes = patch.changes()
        error = _validate_bid_fields(changes, partial=True)
        if error:
            return Result.failure(error)

        async with self._store.transaction() as tx:
            bid = await tx.session.get(Bid, bid_id, with_for_update=True)
            if bid is None:
                return tx.abort(DomainError.not_found("Bid not found"))
            if bid.provider_id != identity.user_id:
                return tx.abort(DomainError.forbidden("You can only update your own bids"))
            if bid.status != BidStatus.PENDING:
                return tx.abort(DomainError.conflict(
                    f"Only pending bids can be updated (status: {bid.status.value})"
                ))
            if not changes:
                return Result.success(bid)

            for key, value in changes.items():
                if key == "attachments":
                    bid.attachments_json = value
                elif key == "proposal":
                    bid.proposal = value.strip()
                else:
                    setattr(bid, key, value)
            # Edited terms need a fresh look from the customer
            bid.viewed_by_customer = False
            bid.viewed_at = None

        logger.info("Bid updated: id=%s, fields=%s", bid.id, sorted(changes))
        return Result.success(bid)

    async def withdraw_bid(self, identity: Identity, bid_id: uuid.UUID) -> Result[Bid]:
        async with self._store.transaction() as tx:
            bid = await tx.session.get(Bid, bid_id, with_for_update=True)
            if bid is None:
                return tx.abort(DomainError.not_found("Bid not found"))
            if bid.provider_id != identity.user_id:
                return tx.abort(DomainError.forbidden("You can only withdraw your own bids"))
            if bid.status != BidStatus.PENDING:
                return tx.abort(DomainError.conflict(
                    f"Only pending bids can be withdrawn (status: {bid.status.value})"
                ))
            bid.status = BidStatus.WITHDRAWN
            bid.responded_at = utcnow()

        logger.info("Bid withdrawn: id=%s, provider=%s", bid.id, identity.user_id)
        workflowEvents.emit_bid_withdrawn(bid.id, identity.user_id)
        return Result.success(bid)

    async def reject_bid(self, identity: Identity, bid_id: uuid.UUID) -> Result[Bid]:
        async with self._store.transaction() as tx:
            bid = await tx.session.get(Bid, bid_id)
            if bid is None:
                return tx.abort(DomainError.not_found("Bid not found"))
            job = await load_job(tx.session, bid.job_id, for_update=True)
            if job is None:
                return tx.abort(DomainError.not_found("Job not found"))
            if job.customer_id != identity.user_id:
                return tx.abort(DomainError.forbidden("Only the job owner can reject bids"))

            result = await tx.session.execute(
                update(Bid)
                .where(Bid.id == bid.id, Bid.status == BidStatus.PENDING)
                .values(status=BidStatus.REJECTED, responded_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return tx.abort(DomainError.conflict("Bid is no longer pending"))
            await tx.session.refresh(bid)
            self._notifications.bid_rejected(tx, job, bid.id, bid.provider_id)

        logger.info("Bid rejected: id=%s, job=%s", bid.id, bid.job_id)
        workflowEvents.emit_bid_rejected(bid.id, identity.user_id)
        return Result.success(bid)

    async def get_bid(self, identity: Identity, bid_id: uuid.UUID) -> Result[Bid]:
        """Return a bid; the job owner's first view sets the read receipt."""
        async with self._store.transaction() as tx:
            bid = await tx.session.get(Bid, bid_id)
            if bid is None:
                return tx.abort(DomainError.not_found("Bid not found"))
            job = await tx.session.get(Job, bid.job_id)
            is_owner = job is not None and job.customer_id == identity.user_id
            if not (is_owner or bid.provider_id == identity.user_id or identity.is_admin):
                return tx.abort(DomainError.forbidden("You do not have access to this bid"))

            if is_owner and not bid.viewed_by_customer:
                bid.viewed_by_customer = True
                bid.viewed_at = utcnow()
                logger.debug("Bid %s viewed by customer %s", bid.id, identity.user_id)

        return Result.success(bid)

    async def list_job_bids(self, identity: Identity, job_id: uuid.UUID) -> Result[list[Bid]]:
        async with self._store.session() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return Result.failure(DomainError.not_found("Job not found"))
            if job.customer_id != identity.user_id and not identity.is_admin:
                return Result.failure(DomainError.forbidden("Only the job owner can view its bids"))
            bids = (await session.execute(
                select(Bid)
                .where(Bid.job_id == job_id)
                .order_by(Bid.amount_cents.asc(), Bid.created_at.asc())
            )).scalars().all()
        return Result.success(list(bids))

    async def list_provider_bids(
        self,
        identity: Identity,
        *,
        status: BidStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Result[Page[Bid]]:
        if identity.role != Role.PROVIDER:
            return Result.failure(DomainError.forbidden("Only providers have bids"))
        page, page_size = _clamp_page(page, page_size, self._max_page_size)
        conditions = [Bid.provider_id == identity.user_id]
        if status is not None:
            conditions.append(Bid.status == status)

        async with self._store.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(Bid).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(Bid)
                .where(*conditions)
                .order_by(Bid.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
        return Result.success(Page(items=list(rows), total=total, page=page, page_size=page_size))

    # -----------------------------------------------------------------------
    # Transaction steps (shared with the orchestrator)
    # -----------------------------------------------------------------------

    async def _reject_pending_bids(
        self,
        tx: TransactionScope,
        job: Job,
        *,
        except_bid_id: uuid.UUID | None = None,
    ) -> list[tuple[uuid.UUID, uuid.UUID]]:
        """Reject every other PENDING bid on ``job``; returns (bid_id, provider_id) pairs."""
        conditions = [Bid.job_id == job.id, Bid.status == BidStatus.PENDING]
        if except_bid_id is not None:
            conditions.append(Bid.id != except_bid_id)

        losers = (await tx.session.execute(
            select(Bid.id, Bid.provider_id).where(*conditions)
        )).all()
        if not losers:
            return []

        await tx.session.execute(
            update(Bid)
            .where(Bid.id.in_([row.id for row in losers]), Bid.status == BidStatus.PENDING)
            .values(status=BidStatus.REJECTED, responded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        for bid_id, provider_id in losers:
            self._notifications.bid_rejected(tx, job, bid_id, provider_id)
        return [(row.id, row.provider_id) for row in losers]

    async def close_auction(
        self,
        tx: TransactionScope,
        job: Job,
        bid: Bid,
    ) -> Result[list[uuid.UUID]]:
        """Accept ``bid``, reject its siblings and move the job to BID_ACCEPTED.

        Runs inside the caller's transaction. The job must already be
        locked by the caller.
        """
        if not is_biddable(job.status):
            return tx.abort(DomainError.conflict("This job is no longer available"))

        accepted = await tx.session.execute(
            update(Bid)
            .where(Bid.id == bid.id, Bid.status == BidStatus.PENDING)
            .values(status=BidStatus.ACCEPTED, responded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if accepted.rowcount != 1:
            return tx.abort(DomainError.conflict("Bid is no longer pending"))

        losers = await self._reject_pending_bids(tx, job, except_bid_id=bid.id)

        check = transition_job(job, JobStatus.BID_ACCEPTED, ActorType.CUSTOMER)
        if not check.allowed:
            return tx.abort(DomainError.conflict(check.reason or "This job is no longer available"))
        job.accepted_bid_id = bid.id
        await tx.session.flush()
        await tx.session.refresh(bid)
        return Result.success([bid_id for bid_id, _ in losers])
