"""
Project & Milestone State Manager
=================================

Finite state machines for projects and their milestones. Both follow the
same contract as ``jobStateManager``: callers validate with the module's
``validate_*_transition`` before writing a new status.

Project::

    pending_start --> in_progress --> pending_approval --> completed
    (any state except completed) --> cancelled

Milestone::

    pending --> in_progress --> pending_approval --> approved
    pending ------------------> pending_approval --> rejected

A request to move to the status an entity already has is not a transition;
callers treat it as an idempotent no-op before consulting these tables.
"""

from __future__ import annotations

from bidflow.models.job import JobStatus
from bidflow.models.project import MilestoneStatus, ProjectStatus
from bidflow.services.jobStateManager import ActorType, TransitionResult


# ---------------------------------------------------------------------------
# Project transitions
# ---------------------------------------------------------------------------

PROJECT_TRANSITIONS: dict[ProjectStatus, set[ProjectStatus]] = {
    ProjectStatus.PENDING_START: {
        ProjectStatus.IN_PROGRESS,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.IN_PROGRESS: {
        ProjectStatus.PENDING_APPROVAL,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.PENDING_APPROVAL: {
        ProjectStatus.COMPLETED,
        ProjectStatus.CANCELLED,
    },
    ProjectStatus.COMPLETED: set(),
    ProjectStatus.CANCELLED: set(),
}

# Project status the owning job mirrors once the project reaches it
PROJECT_TO_JOB_STATUS: dict[ProjectStatus, JobStatus] = {
    ProjectStatus.IN_PROGRESS: JobStatus.IN_PROGRESS,
    ProjectStatus.PENDING_APPROVAL: JobStatus.PENDING_APPROVAL,
    ProjectStatus.COMPLETED: JobStatus.COMPLETED,
    ProjectStatus.CANCELLED: JobStatus.CANCELLED,
}

CLOSED_PROJECT_STATUSES: frozenset[ProjectStatus] = frozenset({
    ProjectStatus.COMPLETED,
    ProjectStatus.CANCELLED,
})


# ---------------------------------------------------------------------------
# Milestone transitions
# ---------------------------------------------------------------------------

MILESTONE_TRANSITIONS: dict[MilestoneStatus, set[MilestoneStatus]] = {
    MilestoneStatus.PENDING: {
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.PENDING_APPROVAL,
    },
    MilestoneStatus.IN_PROGRESS: {
        MilestoneStatus.PENDING_APPROVAL,
    },
    MilestoneStatus.PENDING_APPROVAL: {
        MilestoneStatus.APPROVED,
        MilestoneStatus.REJECTED,
    },
    MilestoneStatus.APPROVED: set(),
    MilestoneStatus.REJECTED: set(),
}

# Milestones whose terms may still be edited
EDITABLE_MILESTONE_STATUSES: frozenset[MilestoneStatus] = frozenset({
    MilestoneStatus.PENDING,
    MilestoneStatus.IN_PROGRESS,
})


def _invalid(current: str, new: str, allowed: set) -> TransitionResult:
    return TransitionResult(
        allowed=False,
        reason=(
            f"Invalid transition: '{current}' -> '{new}'. "
            f"Allowed transitions from '{current}': "
            f"{', '.join(sorted(s.value for s in allowed)) or 'none'}."
        ),
    )


def _only(actor_type: ActorType, allowed: tuple[ActorType, ...], message: str) -> TransitionResult:
    if actor_type in allowed or actor_type == ActorType.SYSTEM:
        return TransitionResult(allowed=True)
    return TransitionResult(allowed=False, reason=message)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_project_transition(
    current_status: ProjectStatus,
    new_status: ProjectStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate a project status change for the given actor.

    Completion is reserved for the system (the final escrow release).
    """
    allowed_targets = PROJECT_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return _invalid(current_status.value, new_status.value, allowed_targets)

    if new_status == ProjectStatus.COMPLETED:
        return _only(
            actor_type,
            (),
            "A project is completed by releasing its final payment.",
        )

    if new_status == ProjectStatus.PENDING_APPROVAL:
        return _only(
            actor_type,
            (ActorType.PROVIDER, ActorType.ADMIN),
            "Only the provider can submit a project for approval.",
        )

    if new_status == ProjectStatus.CANCELLED:
        return _only(
            actor_type,
            (ActorType.CUSTOMER, ActorType.ADMIN),
            "Only the customer can cancel a project.",
        )

    return TransitionResult(allowed=True)


def validate_milestone_transition(
    current_status: MilestoneStatus,
    new_status: MilestoneStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate a milestone status change for the given actor."""
    allowed_targets = MILESTONE_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return _invalid(current_status.value, new_status.value, allowed_targets)

    if new_status in (MilestoneStatus.IN_PROGRESS, MilestoneStatus.PENDING_APPROVAL):
        return _only(
            actor_type,
            (ActorType.PROVIDER,),
            "Only the provider can start or complete a milestone.",
        )

    # approve / reject
    return _only(
        actor_type,
        (ActorType.CUSTOMER,),
        "Only the customer can approve or reject a milestone.",
    )


def is_project_closed(status: ProjectStatus) -> bool:
    return status in CLOSED_PROJECT_STATUSES
