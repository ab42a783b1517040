"""
Job State Manager
=================

Finite state machine governing all valid job status transitions. Every
status change MUST go through ``validate_transition`` before being persisted.

State machine overview::

    draft --> open --> in_bidding --> bid_accepted --> in_progress
        --> pending_approval --> completed

    open --> bid_accepted                 (only bid accepted before a second arrives)
    (any non-terminal state) --> cancelled

Guards enforce that only the correct actor type can trigger certain
transitions.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from bidflow.models.job import JobStatus


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.DRAFT: {
        JobStatus.OPEN,
        JobStatus.CANCELLED,
    },
    JobStatus.OPEN: {
        JobStatus.IN_BIDDING,
        JobStatus.BID_ACCEPTED,
        JobStatus.CANCELLED,
    },
    JobStatus.IN_BIDDING: {
        JobStatus.BID_ACCEPTED,
        JobStatus.CANCELLED,
    },
    JobStatus.BID_ACCEPTED: {
        JobStatus.IN_PROGRESS,
        JobStatus.CANCELLED,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.PENDING_APPROVAL,
        JobStatus.CANCELLED,
    },
    JobStatus.PENDING_APPROVAL: {
        JobStatus.COMPLETED,
        JobStatus.CANCELLED,
    },
    # Terminal states
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.CANCELLED,
})

# Statuses in which providers may still bid and the customer may accept
BIDDABLE_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.OPEN,
    JobStatus.IN_BIDDING,
})

# Statuses in which the job itself (rather than its project) is cancelled
_PRE_ACCEPTANCE: frozenset[JobStatus] = frozenset({
    JobStatus.DRAFT,
    JobStatus.OPEN,
    JobStatus.IN_BIDDING,
})


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_customer_action(actor_type: ActorType, action: str) -> TransitionResult:
    if actor_type not in (ActorType.CUSTOMER, ActorType.SYSTEM, ActorType.ADMIN):
        return TransitionResult(
            allowed=False,
            reason=f"Only the customer can {action}.",
        )
    return TransitionResult(allowed=True)


def _guard_cancel(current: JobStatus, actor_type: ActorType) -> TransitionResult:
    """Customers cancel open jobs directly; later jobs go through the project."""
    if actor_type in (ActorType.SYSTEM, ActorType.ADMIN):
        return TransitionResult(allowed=True)
    if actor_type == ActorType.CUSTOMER and current in _PRE_ACCEPTANCE:
        return TransitionResult(allowed=True)
    return TransitionResult(
        allowed=False,
        reason=(
            f"Job in '{current.value}' status cannot be cancelled directly. "
            f"Cancel the project instead."
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: JobStatus,
    new_status: JobStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a job status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor have permission for this specific transition (guards)?

    Returns a ``TransitionResult`` with ``allowed=True`` if the transition
    is permitted, or ``allowed=False`` with a human-readable ``reason``.
    """
    # 1. Structural check
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )

    # 2. Guard checks for specific transitions
    if new_status == JobStatus.CANCELLED:
        return _guard_cancel(current_status, actor_type)

    if new_status == JobStatus.OPEN:
        return _guard_customer_action(actor_type, "publish a job")

    if new_status == JobStatus.BID_ACCEPTED:
        return _guard_customer_action(actor_type, "accept a bid")

    return TransitionResult(allowed=True)


def get_valid_transitions(current_status: JobStatus) -> set[JobStatus]:
    """Return the set of statuses reachable from the given status."""
    return VALID_TRANSITIONS.get(current_status, set()).copy()


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_biddable(status: JobStatus) -> bool:
    return status in BIDDABLE_STATUSES
