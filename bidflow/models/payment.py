"""
SQLAlchemy model for the append-only escrow payment ledger.
Corresponds to migration 001_create_marketplace_core.sql.

Rows are never deleted. A refund marks the original row REFUNDED and
appends a ``REFUND`` row pointing back at it through ``refund_of_id``.
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PaymentType(str, enum.Enum):
    DEPOSIT = "DEPOSIT"
    MILESTONE = "MILESTONE"
    FINAL = "FINAL"
    REFUND = "REFUND"


class PaymentStatus(str, enum.Enum):
    AUTHORIZED = "AUTHORIZED"
    HELD_IN_ESCROW = "HELD_IN_ESCROW"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "payments"

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    # Payer (the project's customer)
    user_id: Mapped[uuid.UUID] = mapped_column(
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
    type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType, name="payment_type", create_type=False),
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", create_type=False),
        nullable=False,
    )

    # Gateway handle: PaymentIntent for deposits, Transfer for releases,
    # Refund/reversal for REFUND rows.
    external_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    released_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    refund_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    refund_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_payments_project_id", "project_id"),
        Index("ix_payments_user_created", "user_id", "created_at"),
        # At most one live escrow deposit per project
        Index(
            "uq_payments_active_deposit",
            "project_id",
            unique=True,
            postgresql_where=text(
                "type = 'DEPOSIT' AND status IN ('AUTHORIZED', 'HELD_IN_ESCROW')"
            ),
            sqlite_where=text(
                "type = 'DEPOSIT' AND status IN ('AUTHORIZED', 'HELD_IN_ESCROW')"
            ),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, project_id={self.project_id}, type={self.type}, "
            f"status={self.status}, amount_cents={self.amount_cents})>"
        )
