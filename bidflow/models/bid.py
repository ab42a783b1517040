"""
SQLAlchemy model for bids.
Corresponds to migration 001_create_marketplace_core.sql.

Two partial unique indexes back the bidding rules at the storage level:

* ``uq_bids_job_provider_active`` -- one live (non-withdrawn) bid per
  provider per job.
* ``uq_bids_job_accepted`` -- at most one ACCEPTED bid per job.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class BidStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class Bid(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bids"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="usd",
        server_default="usd",
    )
    proposal: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    # Optional estimate breakdown
    estimated_duration_days: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    proposed_start_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
    )
    labor_cost_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    material_cost_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    equipment_cost_cents: Mapped[Optional[int]] = mapped_column(
        BigInteger,
        nullable=True,
    )
    attachments_json: Mapped[Optional[Any]] = mapped_column(
        JSONType,
        nullable=True,
    )

    status: Mapped[BidStatus] = mapped_column(
        Enum(BidStatus, name="bid_status", create_type=False),
        nullable=False,
        default=BidStatus.PENDING,
        server_default="PENDING",
    )

    # Read receipt
    viewed_by_customer: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    viewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    job: Mapped["Job"] = relationship(
        "Job",
        back_populates="bids",
        foreign_keys=[job_id],
        lazy="raise",
    )

    __table_args__ = (
        Index("ix_bids_job_id", "job_id"),
        Index("ix_bids_provider_id", "provider_id"),
        Index(
            "uq_bids_job_provider_active",
            "job_id",
            "provider_id",
            unique=True,
            postgresql_where=text("status <> 'WITHDRAWN'"),
            sqlite_where=text("status <> 'WITHDRAWN'"),
        ),
        Index(
            "uq_bids_job_accepted",
            "job_id",
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Bid(id={self.id}, job_id={self.job_id}, provider_id={self.provider_id}, "
            f"amount_cents={self.amount_cents}, status={self.status})>"
        )
