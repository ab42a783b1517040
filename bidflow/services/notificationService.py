"""
Notification Service
====================

Records in-app notifications for the parties of a workflow step. Device
delivery (push, email) is owned by a separate service that reads the
``notifications`` table.

Notifications are a best-effort obligation of the operation that triggers
them:

  1. Engines queue a notification on the open ``TransactionScope``.
  2. The store runs the queued writes after the triggering transaction has
     committed, each in its own short transaction.
  3. A failed write is logged and dropped; it never rolls back or fails the
     operation that caused it.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from bidflow.core.database import LedgerStore, TransactionScope
from bidflow.models.base import utcnow
from bidflow.models.bid import Bid
from bidflow.models.job import Job
from bidflow.models.notification import Notification, NotificationType
from bidflow.models.project import Milestone, Project

logger = logging.getLogger(__name__)


def _format_price(amount_cents: int) -> str:
    """Format a price in cents as a dollar string, e.g. 1550 -> "$15.50"."""
    dollars = amount_cents / 100
    return f"${dollars:,.2f}"


class NotificationService:
    """Queues and stores notifications against a ``LedgerStore``."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    # -----------------------------------------------------------------------
    # Core helpers
    # -----------------------------------------------------------------------

    async def send(
        self,
        user_id: uuid.UUID,
        notification_type: NotificationType,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Persist one notification in its own transaction.

        Returns:
            True if the record was stored, False if the write failed.
        """
        try:
            async with self._store.transaction() as tx:
                tx.session.add(
                    Notification(
                        user_id=user_id,
                        notification_type=notification_type,
                        title=title,
                        body=body,
                        data_json=data,
                        read=False,
                        sent_at=utcnow(),
                    )
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to store notification: user=%s, type=%s",
                user_id,
                notification_type.value,
            )
            return False

        logger.info(
            "Notification stored: user=%s, type=%s",
            user_id,
            notification_type.value,
        )
        return True

    def queue(
        self,
        tx: TransactionScope,
        user_id: uuid.UUID,
        notification_type: NotificationType,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Schedule ``send`` to run once ``tx`` commits."""

        async def _deliver() -> None:
            await self.send(user_id, notification_type, title, body, data)

        tx.after_commit(_deliver)

    # -----------------------------------------------------------------------
    # Bidding
    # -----------------------------------------------------------------------

    def new_bid(self, tx: TransactionScope, job: Job, bid: Bid) -> None:
        self.queue(
            tx,
            job.customer_id,
            NotificationType.NEW_BID,
            "New bid received",
            f'A provider bid {_format_price(bid.amount_cents)} on "{job.title}".',
            {"job_id": str(job.id), "bid_id": str(bid.id)},
        )

    def bid_accepted(self, tx: TransactionScope, job: Job, bid: Bid, project: Project) -> None:
        self.queue(
            tx,
            bid.provider_id,
            NotificationType.BID_ACCEPTED,
            "Your bid was accepted",
            f'Your bid of {_format_price(bid.amount_cents)} on "{job.title}" was accepted.',
            {"job_id": str(job.id), "bid_id": str(bid.id), "project_id": str(project.id)},
        )

    def bid_rejected(self, tx: TransactionScope, job: Job, bid_id: uuid.UUID, provider_id: uuid.UUID) -> None:
        self.queue(
            tx,
            provider_id,
            NotificationType.BID_REJECTED,
            "Bid not selected",
            f'Your bid on "{job.title}" was not selected.',
            {"job_id": str(job.id), "bid_id": str(bid_id)},
        )

    # -----------------------------------------------------------------------
    # Projects & milestones
    # -----------------------------------------------------------------------

    def milestone_completed(self, tx: TransactionScope, project: Project, milestone: Milestone) -> None:
        self.queue(
            tx,
            project.customer_id,
            NotificationType.MILESTONE_COMPLETED,
            "Milestone ready for review",
            f'"{milestone.title}" has been marked complete.',
            {"project_id": str(project.id), "milestone_id": str(milestone.id)},
        )

    def milestone_reviewed(
        self,
        tx: TransactionScope,
        project: Project,
        milestone: Milestone,
        approved: bool,
    ) -> None:
        if approved:
            notification_type = NotificationType.MILESTONE_APPROVED
            title = "Milestone approved"
            body = f'"{milestone.title}" was approved.'
        else:
            notification_type = NotificationType.MILESTONE_REJECTED
            title = "Milestone rejected"
            body = f'"{milestone.title}" was rejected: {milestone.rejection_reason}'
        self.queue(
            tx,
            project.provider_id,
            notification_type,
            title,
            body,
            {"project_id": str(project.id), "milestone_id": str(milestone.id)},
        )

    def project_cancelled(self, tx: TransactionScope, project: Project) -> None:
        self.queue(
            tx,
            project.provider_id,
            NotificationType.PROJECT_CANCELLED,
            "Project cancelled",
            f"The customer cancelled the project. Reason: {project.cancellation_reason or 'none given'}",
            {"project_id": str(project.id)},
        )

    # -----------------------------------------------------------------------
    # Payments
    # -----------------------------------------------------------------------

    def payment_received(
        self,
        tx: TransactionScope,
        project: Project,
        amount_cents: int,
        final: bool,
    ) -> None:
        self.queue(
            tx,
            project.provider_id,
            NotificationType.PAYMENT_RECEIVED,
            "Payment released",
            f"{_format_price(amount_cents)} was released to you.",
            {"project_id": str(project.id), "amount_cents": amount_cents},
        )
        if final:
            self.queue(
                tx,
                project.customer_id,
                NotificationType.PROJECT_COMPLETED,
                "Project completed",
                "The final payment was released and the project is complete.",
                {"project_id": str(project.id)},
            )
