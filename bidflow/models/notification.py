"""
SQLAlchemy model for in-app notifications.
Corresponds to migration 001_create_marketplace_core.sql.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Enum, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UUIDPrimaryKeyMixin


class NotificationType(str, enum.Enum):
    """Classification of marketplace notification events."""
    NEW_BID = "NEW_BID"
    BID_ACCEPTED = "BID_ACCEPTED"
    BID_REJECTED = "BID_REJECTED"
    MILESTONE_COMPLETED = "MILESTONE_COMPLETED"
    MILESTONE_APPROVED = "MILESTONE_APPROVED"
    MILESTONE_REJECTED = "MILESTONE_REJECTED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PROJECT_COMPLETED = "PROJECT_COMPLETED"
    PROJECT_CANCELLED = "PROJECT_CANCELLED"


class Notification(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Persistent notification record for in-app notification history.

    Delivery to devices is handled by a separate service that reads these
    rows; this service only records that a party should be told.
    """
    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    body: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, name="notification_type", create_type=False),
        nullable=False,
    )
    data_json: Mapped[Optional[Any]] = mapped_column(
        JSONType,
        nullable=True,
    )
    read: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_notifications_user_unread", "user_id", "read"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, user_id={self.user_id}, "
            f"type={self.notification_type}, read={self.read})>"
        )
