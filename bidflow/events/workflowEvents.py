"""
Workflow Event Emission
=======================

Domain events for the bid -> project -> escrow workflow. Each function
builds a standardised payload, logs it, and returns it so callers (and
tests) can inspect what was published.

Events are emitted only after the owning transaction has committed. The
transport is the application log; downstream consumers (analytics,
messaging) tail it.

Events emitted:
  - job.created
  - job.status_changed
  - job.cancelled
  - bid.submitted
  - bid.withdrawn
  - bid.accepted
  - bid.rejected
  - project.created
  - project.status_changed
  - milestone.status_changed
  - escrow.funded
  - payment.released
  - payment.refunded
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _build_event(
    event_type: str,
    subject_id: uuid.UUID,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Construct a standardised event payload."""
    return {
        "event_type": event_type,
        "subject_id": str(subject_id),
        "actor_id": str(actor_id) if actor_id else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data or {},
    }


def _emit(event: dict[str, Any]) -> dict[str, Any]:
    logger.info(
        "Event emitted: %s for %s",
        event["event_type"],
        event["subject_id"],
        extra={"event": event},
    )
    return event


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def emit_job_created(job_id: uuid.UUID, customer_id: uuid.UUID, status: str) -> dict[str, Any]:
    return _emit(_build_event(
        "job.created", job_id, actor_id=customer_id, data={"status": status},
    ))


def emit_job_status_changed(
    job_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Emit event when a job transitions between states."""
    event = _build_event(
        "job.status_changed",
        job_id,
        actor_id=actor_id,
        data={"old_status": old_status, "new_status": new_status},
    )
    logger.info(
        "Event emitted: %s for job %s (%s -> %s)",
        event["event_type"],
        job_id,
        old_status,
        new_status,
    )
    return event


def emit_job_cancelled(
    job_id: uuid.UUID,
    cancelled_by: uuid.UUID,
    reason: str | None = None,
) -> dict[str, Any]:
    return _emit(_build_event(
        "job.cancelled", job_id, actor_id=cancelled_by, data={"reason": reason},
    ))


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------

def emit_bid_submitted(
    bid_id: uuid.UUID,
    job_id: uuid.UUID,
    provider_id: uuid.UUID,
    amount_cents: int,
) -> dict[str, Any]:
    return _emit(_build_event(
        "bid.submitted",
        bid_id,
        actor_id=provider_id,
        data={"job_id": str(job_id), "amount_cents": amount_cents},
    ))


def emit_bid_withdrawn(bid_id: uuid.UUID, provider_id: uuid.UUID) -> dict[str, Any]:
    return _emit(_build_event("bid.withdrawn", bid_id, actor_id=provider_id))


def emit_bid_accepted(
    bid_id: uuid.UUID,
    job_id: uuid.UUID,
    project_id: uuid.UUID,
    customer_id: uuid.UUID,
    rejected_bid_ids: list[uuid.UUID],
) -> dict[str, Any]:
    """Emit event when the auction for a job closes on an accepted bid."""
    return _emit(_build_event(
        "bid.accepted",
        bid_id,
        actor_id=customer_id,
        data={
            "job_id": str(job_id),
            "project_id": str(project_id),
            "rejected_bid_ids": [str(b) for b in rejected_bid_ids],
        },
    ))


def emit_bid_rejected(bid_id: uuid.UUID, customer_id: uuid.UUID) -> dict[str, Any]:
    return _emit(_build_event("bid.rejected", bid_id, actor_id=customer_id))


# ---------------------------------------------------------------------------
# Projects & milestones
# ---------------------------------------------------------------------------

def emit_project_created(
    project_id: uuid.UUID,
    job_id: uuid.UUID,
    agreed_amount_cents: int,
) -> dict[str, Any]:
    return _emit(_build_event(
        "project.created",
        project_id,
        data={"job_id": str(job_id), "agreed_amount_cents": agreed_amount_cents},
    ))


def emit_project_status_changed(
    project_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    return _emit(_build_event(
        "project.status_changed",
        project_id,
        actor_id=actor_id,
        data={"old_status": old_status, "new_status": new_status},
    ))


def emit_milestone_status_changed(
    milestone_id: uuid.UUID,
    project_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    return _emit(_build_event(
        "milestone.status_changed",
        milestone_id,
        actor_id=actor_id,
        data={
            "project_id": str(project_id),
            "old_status": old_status,
            "new_status": new_status,
        },
    ))


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------

def emit_escrow_funded(
    payment_id: uuid.UUID,
    project_id: uuid.UUID,
    amount_cents: int,
    customer_id: uuid.UUID,
) -> dict[str, Any]:
    return _emit(_build_event(
        "escrow.funded",
        payment_id,
        actor_id=customer_id,
        data={"project_id": str(project_id), "amount_cents": amount_cents},
    ))


def emit_payment_released(
    payment_id: uuid.UUID,
    project_id: uuid.UUID,
    payment_type: str,
    amount_cents: int,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    return _emit(_build_event(
        "payment.released",
        payment_id,
        actor_id=actor_id,
        data={
            "project_id": str(project_id),
            "type": payment_type,
            "amount_cents": amount_cents,
        },
    ))


def emit_payment_refunded(
    payment_id: uuid.UUID,
    refund_payment_id: uuid.UUID,
    amount_cents: int,
    actor_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    return _emit(_build_event(
        "payment.refunded",
        payment_id,
        actor_id=actor_id,
        data={
            "refund_payment_id": str(refund_payment_id),
            "amount_cents": amount_cents,
        },
    ))
