"""
SQLAlchemy model for jobs.
Corresponds to migration 001_create_marketplace_core.sql.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class JobStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    IN_BIDDING = "IN_BIDDING"                  # at least one bid received
    BID_ACCEPTED = "BID_ACCEPTED"              # project created, awaiting escrow
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Job(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "jobs"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    category: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Pricing (cents)
    starting_bid_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    max_budget_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="usd",
        server_default="usd",
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_type=False),
        nullable=False,
        default=JobStatus.OPEN,
        server_default="OPEN",
    )
    accepted_bid_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("bids.id", use_alter=True, name="fk_jobs_accepted_bid_id"),
        nullable=True,
    )

    published_at: Mapped[Optional[datetime]] = mapped_column(
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
    bids: Mapped[list["Bid"]] = relationship(
        "Bid",
        back_populates="job",
        foreign_keys="Bid.job_id",
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_jobs_customer_id", "customer_id"),
        Index("ix_jobs_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, status={self.status}, customer_id={self.customer_id})>"
