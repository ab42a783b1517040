"""
Project / Milestone Engine
==========================

Owns projects and milestones after a bid has been accepted:

- project creation (a step of bid acceptance, run on the orchestrator's
  transaction)
- project reads and status changes, mirrored onto the owning job
- milestone definition, editing, and the provider-submit / customer-review
  cycle
- project cancellation

Money never moves here. Approving a milestone only makes it eligible for
``EscrowLedger.release_milestone_payment``, and a project reaches COMPLETED
only through ``EscrowLedger.release_final_payment``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bidflow.core.database import LedgerStore, TransactionScope
from bidflow.core.patch import UNSET, Patch
from bidflow.core.result import DomainError, Page, Result
from bidflow.events import workflowEvents
from bidflow.models.base import utcnow
from bidflow.models.bid import Bid
from bidflow.models.job import Job
from bidflow.models.payment import Payment, PaymentStatus, PaymentType
from bidflow.models.project import Milestone, MilestoneStatus, Project, ProjectStatus
from bidflow.services.auth_service import Identity
from bidflow.services.bidEngine import load_job, transition_job
from bidflow.services.jobStateManager import ActorType, TransitionResult
from bidflow.services.notificationService import NotificationService
from bidflow.services.projectStateManager import (
    EDITABLE_MILESTONE_STATUSES,
    PROJECT_TO_JOB_STATUS,
    is_project_closed,
    validate_milestone_transition,
    validate_project_transition,
)

logger = logging.getLogger(__name__)

# Statuses a caller may request through ``update_project_status``
_REQUESTABLE_STATUSES = frozenset({ProjectStatus.IN_PROGRESS, ProjectStatus.PENDING_APPROVAL})


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MilestoneDraft:
    title: str
    amount_cents: int
    description: str | None = None
    order: int | None = None
    due_date: date | None = None


@dataclass(frozen=True)
class MilestonePatch(Patch):
    """Editable milestone terms. Status is deliberately absent."""
    title: Any = UNSET
    description: Any = UNSET
    amount_cents: Any = UNSET
    order: Any = UNSET
    due_date: Any = UNSET


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

async def load_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    *,
    for_update: bool = False,
) -> Project | None:
    stmt = select(Project).where(Project.id == project_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


def is_party(identity: Identity, project: Project) -> bool:
    return identity.user_id in (project.customer_id, project.provider_id)


def can_view(identity: Identity, project: Project) -> bool:
    return identity.is_admin or is_party(identity, project)


async def allocated_amount(
    session: AsyncSession,
    project_id: uuid.UUID,
    *,
    exclude_milestone_id: uuid.UUID | None = None,
) -> int:
    """Sum of milestone amounts still counting against the agreed amount."""
    conditions = [
        Milestone.project_id == project_id,
        Milestone.status != MilestoneStatus.REJECTED,
    ]
    if exclude_milestone_id is not None:
        conditions.append(Milestone.id != exclude_milestone_id)
    total = (await session.execute(
        select(func.coalesce(func.sum(Milestone.amount_cents), 0)).where(*conditions)
    )).scalar_one()
    return int(total)


async def has_active_deposit(session: AsyncSession, project_id: uuid.UUID) -> bool:
    row = (await session.execute(
        select(Payment.id).where(
            Payment.project_id == project_id,
            Payment.type == PaymentType.DEPOSIT,
            Payment.status == PaymentStatus.HELD_IN_ESCROW,
        )
    )).first()
    return row is not None


def transition_project(
    project: Project,
    new_status: ProjectStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate and apply a project status change.

    Lifecycle dates are written only when still unset, so replays never
    move them.
    """
    check = validate_project_transition(project.status, new_status, actor_type)
    if not check.allowed:
        return check

    now = utcnow()
    project.status = new_status
    if new_status == ProjectStatus.IN_PROGRESS and project.start_date is None:
        project.start_date = now
    elif new_status == ProjectStatus.COMPLETED:
        if project.actual_end_date is None:
            project.actual_end_date = now
        if project.completed_at is None:
            project.completed_at = now
    elif new_status == ProjectStatus.CANCELLED and project.cancelled_at is None:
        project.cancelled_at = now
    return check


async def sync_job_status(tx: TransactionScope, project: Project) -> tuple[str, str] | None:
    """Mirror the project's status onto its job; returns (old, new) when changed."""
    target = PROJECT_TO_JOB_STATUS.get(project.status)
    if target is None:
        return None
    job = await load_job(tx.session, project.job_id, for_update=True)
    if job is None or job.status == target:
        return None
    old = job.status
    check = transition_job(job, target, ActorType.SYSTEM)
    if not check.allowed:
        logger.warning(
            "Job %s not synced to project %s: %s",
            job.id,
            project.id,
            check.reason,
        )
        return None
    return old.value, target.value


def _paginate(page: int, page_size: int, max_page_size: int) -> tuple[int, int]:
    return max(page, 1), min(max(page_size, 1), max_page_size)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ProjectEngine:
    """Project and milestone operations against a ``LedgerStore``."""

    def __init__(
        self,
        store: LedgerStore,
        notifications: NotificationService,
        *,
        max_page_size: int = 100,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._max_page_size = max_page_size

    # -----------------------------------------------------------------------
    # Transaction step used by bid acceptance
    # -----------------------------------------------------------------------

    async def create_project(self, tx: TransactionScope, job: Job, bid: Bid) -> Project:
        """Create the project for an accepted bid on the caller's transaction.

        A second project for the same job violates ``projects.job_id``
        uniqueness and aborts the whole acceptance.
        """
        estimated_end: date | None = None
        if bid.proposed_start_date is not None and bid.estimated_duration_days:
            estimated_end = bid.proposed_start_date + timedelta(days=bid.estimated_duration_days)

        project = Project(
            job_id=job.id,
            customer_id=job.customer_id,
            provider_id=bid.provider_id,
            agreed_amount_cents=bid.amount_cents,
            currency=bid.currency,
            status=ProjectStatus.PENDING_START,
            estimated_end_date=estimated_end,
        )
        tx.session.add(project)
        await tx.session.flush()
        return project

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get_project(self, identity: Identity, project_id: uuid.UUID) -> Result[tuple[Project, list[Milestone]]]:
        async with self._store.session() as session:
            project = await session.get(Project, project_id)
            if project is None:
                return Result.failure(DomainError.not_found("Project not found"))
            if not can_view(identity, project):
                return Result.failure(DomainError.forbidden("You do not have access to this project"))
            milestones = (await session.execute(
                select(Milestone)
                .where(Milestone.project_id == project_id)
                .order_by(Milestone.sort_order, Milestone.created_at)
            )).scalars().all()
        return Result.success((project, list(milestones)))

    async def list_projects(
        self,
        identity: Identity,
        *,
        status: ProjectStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Result[Page[Project]]:
        page, page_size = _paginate(page, page_size, self._max_page_size)
        conditions = [or_(Project.customer_id == identity.user_id, Project.provider_id == identity.user_id)]
        if status is not None:
            conditions.append(Project.status == status)

        async with self._store.session() as session:
            total = (await session.execute(
                select(func.count()).select_from(Project).where(*conditions)
            )).scalar_one()
            rows = (await session.execute(
                select(Project)
                .where(*conditions)
                .order_by(Project.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )).scalars().all()
        return Result.success(Page(items=list(rows), total=total, page=page, page_size=page_size))

    # -----------------------------------------------------------------------
    # Project status
    # -----------------------------------------------------------------------

    async def update_project_status(
        self,
        identity: Identity,
        project_id: uuid.UUID,
        status: ProjectStatus,
    ) -> Result[Project]:
        """Move a project to IN_PROGRESS or PENDING_APPROVAL.

        Re-requesting the current status is a no-op that leaves every
        lifecycle date untouched.
        """
        if status not in _REQUESTABLE_STATUSES:
            return Result.failure(DomainError.validation(
                f"Status '{status.value}' cannot be set directly. "
                f"Use the final payment release or project cancellation."
            ))

        job_change: tuple[str, str] | None = None
        async with self._store.transaction() as tx:
            project = await load_project(tx.session, project_id, for_update=True)
            if project is None:
                return tx.abort(DomainError.not_found("Project not found"))
            if not can_view(identity, project):
                return tx.abort(DomainError.forbidden("You are not a party to this project"))
            if (
                status == ProjectStatus.PENDING_APPROVAL
                and identity.user_id != project.provider_id
                and not identity.is_admin
            ):
                return tx.abort(DomainError.forbidden("Only the provider can submit a project for approval"))
            if project.status == status:
                return Result.success(project)

            if status == ProjectStatus.IN_PROGRESS and not await has_active_deposit(tx.session, project.id):
                return tx.abort(DomainError.conflict("Escrow must be funded before work starts"))

            old_status = project.status
            check = transition_project(project, status, identity.actor_type)
            if not check.allowed:
                return tx.abort(DomainError.conflict(check.reason or "Invalid status change"))
            job_change = await sync_job_status(tx, project)

        logger.info(
            "Project status changed: id=%s, %s -> %s, by=%s",
            project.id,
            old_status.value,
            status.value,
            identity.user_id,
        )
        workflowEvents.emit_project_status_changed(project.id, old_status.value, status.value, identity.user_id)
        if job_change:
            workflowEvents.emit_job_status_changed(project.job_id, *job_change)
        return Result.success(project)

    async def cancel_project(
        self,
        identity: Identity,
        project_id: uuid.UUID,
        reason: str | None = None,
    ) -> Result[Project]:
        """Cancel a project that has not completed.

        Escrowed funds are not touched; refunds are requested separately.
        """
        job_change: tuple[str, str] | None = None
        async with self._store.transaction() as tx:
            project = await load_project(tx.session, project_id, for_update=True)
            if project is None:
                return tx.abort(DomainError.not_found("Project not found"))
            if project.customer_id != identity.user_id and not identity.is_admin:
                return tx.abort(DomainError.forbidden("Only the customer can cancel this project"))
            if project.status == ProjectStatus.CANCELLED:
                return Result.success(project)

            old_status = project.status
            check = transition_project(project, ProjectStatus.CANCELLED, identity.actor_type)
            if not check.allowed:
                return tx.abort(DomainError.conflict(
                    f"Cannot cancel a project in '{old_status.value}' status"
                ))
            project.cancellation_reason = reason
            job_change = await sync_job_status(tx, project)
            self._notifications.project_cancelled(tx, project)

        logger.info("Project cancelled: id=%s, by=%s", project.id, identity.user_id)
        workflowEvents.emit_project_status_changed(
            project.id, old_status.value, ProjectStatus.CANCELLED.value, identity.user_id
        )
        if job_change:
            workflowEvents.emit_job_status_changed(project.job_id, *job_change)
            workflowEvents.emit_job_cancelled(project.job_id, identity.user_id, reason)
        return Result.success(project)

    # -----------------------------------------------------------------------
    # Milestone definition
    # -----------------------------------------------------------------------

    async def create_milestone(
        self,
        identity: Identity,
        project_id: uuid.UUID,
        draft: MilestoneDraft,
    ) -> Result[Milestone]:
        if not draft.title or not draft.title.strip():
            return Result.failure(DomainError.validation("Milestone title is required"))
        if draft.amount_cents is None or draft.amount_cents <= 0:
            return Result.failure(DomainError.validation("Milestone amount must be positive"))
        if draft.order is not None and draft.order < 1:
            return Result.failure(DomainError.validation("Milestone order starts at 1"))

        async with self._store.transaction() as tx:
            project = await load_project(tx.session, project_id, for_update=True)
            if project is None:
                return tx.abort(DomainError.not_found("Project not found"))
            if not is_party(identity, project):
                return tx.abort(DomainError.forbidden("Only project parties can add milestones"))
            if is_project_closed(project.status):
                return tx.abort(DomainError.conflict(
                    f"Cannot add milestones to a {project.status.value.lower()} project"
                ))

            allocated = await allocated_amount(tx.session, project.id)
            if allocated + draft.amount_cents > project.agreed_amount_cents:
                return tx.abort(DomainError.validation(
                    "Milestone amounts would exceed the agreed project amount",
                    agreed_amount_cents=project.agreed_amount_cents,
                    allocated_cents=allocated,
                    available_cents=project.agreed_amount_cents - allocated,
                ))

            milestone = Milestone(
                project_id=project.id,
                title=draft.title.strip(),
                description=draft.description,
                amount_cents=draft.amount_cents,
                sort_order=draft.order or 1,
                due_date=draft.due_date,
                status=MilestoneStatus.PENDING,
            )
            tx.session.add(milestone)
            await tx.session.flush()

        logger.info(
            "Milestone created: id=%s, project=%s, amount=%d",
            milestone.id,
            project_id,
            milestone.amount_cents,
        )
        return Result.success(milestone)

    async def update_milestone(
        self,
        identity: Identity,
        milestone_id: uuid.UUID,
        patch: MilestonePatch,
    ) -> Result[Milestone]:
        changes = patch.changes()
        if "title" in changes and (not changes["title"] or not str(changes["title"]).strip()):
            return Result.failure(DomainError.validation("Milestone title is required"))
        if "amount_cents" in changes and (changes["amount_cents"] is None or changes["amount_cents"] <= 0):
            return Result.failure(DomainError.validation("Milestone amount must be positive"))
        if "order" in changes and (changes["order"] is None or changes["order"] < 1):
            return Result.failure(DomainError.validation("Milestone order starts at 1"))

        async with self._store.transaction() as tx:
            loaded = await self._load_milestone(tx, milestone_id)
            if not loaded.ok:
                return tx.abort(loaded.error)
            milestone, project = loaded.unwrap()
            if not is_party(identity, project):
                return tx.abort(DomainError.forbidden("Only project parties can edit milestones"))
            if is_project_closed(project.status):
                return tx.abort(DomainError.conflict("The project is closed"))
            if milestone.status not in EDITABLE_MILESTONE_STATUSES or milestone.payment_id is not None:
                return tx.abort(DomainError.conflict(
                    f"Milestone can no longer be edited (status: {milestone.status.value})"
                ))
            if not changes:
                return Result.success(milestone)

            if "amount_cents" in changes:
                allocated = await allocated_amount(tx.session, project.id, exclude_milestone_id=milestone.id)
                if allocated + changes["amount_cents"] > project.agreed_amount_cents:
                    return tx.abort(DomainError.validation(
                        "Milestone amounts would exceed the agreed project amount",
                        agreed_amount_cents=project.agreed_amount_cents,
                        allocated_cents=allocated,
                        available_cents=project.agreed_amount_cents - allocated,
                    ))

            for key, value in changes.items():
                if key == "order":
                    milestone.sort_order = value
                elif key == "title":
                    milestone.title = value.strip()
                else:
                    setattr(milestone, key, value)

        logger.info("Milestone updated: id=%s, fields=%s", milestone.id, sorted(changes))
        return Result.success(milestone)

    # -----------------------------------------------------------------------
    # Milestone lifecycle
    # -----------------------------------------------------------------------

    async def start_milestone(self, identity: Identity, milestone_id: uuid.UUID) -> Result[Milestone]:
        return await self._move_milestone(
            identity,
            milestone_id,
            MilestoneStatus.IN_PROGRESS,
            owner="provider",
        )

    async def complete_milestone(
        self,
        identity: Identity,
        milestone_id: uuid.UUID,
        *,
        completion_photos: list[str] | None = None,
        notes: str | None = None,
    ) -> Result[Milestone]:
        def _record(milestone: Milestone) -> None:
            milestone.completed_at = utcnow()
            milestone.completion_photos_json = completion_photos or []
            milestone.notes = notes

        return await self._move_milestone(
            identity,
            milestone_id,
            MilestoneStatus.PENDING_APPROVAL,
            owner="provider",
            apply=_record,
            notify=self._notifications.milestone_completed,
        )

    async def approve_milestone(self, identity: Identity, milestone_id: uuid.UUID) -> Result[Milestone]:
        def _record(milestone: Milestone) -> None:
            milestone.approved_at = utcnow()

        return await self._move_milestone(
            identity,
            milestone_id,
            MilestoneStatus.APPROVED,
            owner="customer",
            apply=_record,
            notify=lambda tx, project, milestone: self._notifications.milestone_reviewed(
                tx, project, milestone, approved=True
            ),
        )

    async def reject_milestone(
        self,
        identity: Identity,
        milestone_id: uuid.UUID,
        reason: str,
    ) -> Result[Milestone]:
        if not reason or not reason.strip():
            return Result.failure(DomainError.validation("A rejection reason is required"))

        def _record(milestone: Milestone) -> None:
            milestone.rejection_reason = reason.strip()
            milestone.notes = reason.strip()

        return await self._move_milestone(
            identity,
            milestone_id,
            MilestoneStatus.REJECTED,
            owner="customer",
            apply=_record,
            notify=lambda tx, project, milestone: self._notifications.milestone_reviewed(
                tx, project, milestone, approved=False
            ),
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _load_milestone(
        self,
        tx: TransactionScope,
        milestone_id: uuid.UUID,
    ) -> Result[tuple[Milestone, Project]]:
        milestone = await tx.session.get(Milestone, milestone_id, with_for_update=True)
        if milestone is None:
            return Result.failure(DomainError.not_found("Milestone not found"))
        project = await tx.session.get(Project, milestone.project_id)
        if project is None:
            return Result.failure(DomainError.not_found("Project not found"))
        return Result.success((milestone, project))

    async def _move_milestone(
        self,
        identity: Identity,
        milestone_id: uuid.UUID,
        new_status: MilestoneStatus,
        *,
        owner: str,
        apply=None,
        notify=None,
    ) -> Result[Milestone]:
        async with self._store.transaction() as tx:
            loaded = await self._load_milestone(tx, milestone_id)
            if not loaded.ok:
                return tx.abort(loaded.error)
            milestone, project = loaded.unwrap()

            party_id = project.provider_id if owner == "provider" else project.customer_id
            if identity.user_id != party_id:
                return tx.abort(DomainError.forbidden(
                    f"Only the project's {owner} can do this"
                ))
            if is_project_closed(project.status):
                return tx.abort(DomainError.conflict("The project is closed"))

            actor = ActorType.PROVIDER if owner == "provider" else ActorType.CUSTOMER
            old_status = milestone.status
            check = validate_milestone_transition(old_status, new_status, actor)
            if not check.allowed:
                return tx.abort(DomainError.conflict(check.reason or "Invalid milestone transition"))

            milestone.status = new_status
            if apply is not None:
                apply(milestone)
            if notify is not None:
                notify(tx, project, milestone)

        logger.info(
            "Milestone %s: %s -> %s by %s",
            milestone.id,
            old_status.value,
            new_status.value,
            identity.user_id,
        )
        workflowEvents.emit_milestone_status_changed(
            milestone.id, project.id, old_status.value, new_status.value, identity.user_id
        )
        return Result.success(milestone)
