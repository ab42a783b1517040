"""
SQLAlchemy models for projects and milestones.
Corresponds to migration 001_create_marketplace_core.sql.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class ProjectStatus(str, enum.Enum):
    PENDING_START = "PENDING_START"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MilestoneStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------

class Project(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """The engagement created when a customer accepts a bid.

    ``agreed_amount_cents`` is copied from the accepted bid and never
    changes afterwards.
    """
    __tablename__ = "projects"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("jobs.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )

    agreed_amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="usd",
        server_default="usd",
    )

    status: Mapped[ProjectStatus] = mapped_column(
        Enum(ProjectStatus, name="project_status", create_type=False),
        nullable=False,
        default=ProjectStatus.PENDING_START,
        server_default="PENDING_START",
    )

    # Lifecycle dates
    start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    estimated_end_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
    )
    actual_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Relationships
    milestones: Mapped[list["Milestone"]] = relationship(
        "Milestone",
        back_populates="project",
        order_by="Milestone.sort_order",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_projects_customer_id", "customer_id"),
        Index("ix_projects_provider_id", "provider_id"),
        Index("ix_projects_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, job_id={self.job_id}, status={self.status}, "
            f"agreed_amount_cents={self.agreed_amount_cents})>"
        )


# ---------------------------------------------------------------------------
# Milestone
# ---------------------------------------------------------------------------

class Milestone(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A payable unit of work within a project.

    ``payment_id`` links the RELEASED milestone payment. It is assigned at
    most once (unique, and only written while still NULL).
    """
    __tablename__ = "milestones"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default="1",
    )
    status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus, name="milestone_status", create_type=False),
        nullable=False,
        default=MilestoneStatus.PENDING,
        server_default="PENDING",
    )
    due_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
    )

    # Completion evidence
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completion_photos_json: Mapped[Optional[Any]] = mapped_column(
        JSONType,
        nullable=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        unique=True,
        nullable=True,
    )

    # Relationships
    project: Mapped["Project"] = relationship(
        "Project",
        back_populates="milestones",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_milestones_project_order", "project_id", "sort_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<Milestone(id={self.id}, project_id={self.project_id}, "
            f"amount_cents={self.amount_cents}, status={self.status})>"
        )
