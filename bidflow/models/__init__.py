"""
BidFlow SQLAlchemy Models
=========================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from bidflow.models import Base, Job, Bid, Project
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Marketplace core --
from .job import Job, JobStatus
from .bid import Bid, BidStatus
from .project import Milestone, MilestoneStatus, Project, ProjectStatus
from .payment import Payment, PaymentStatus, PaymentType

# -- Party statistics --
from .profile import CustomerProfile, ProviderProfile

# -- Notifications --
from .notification import Notification, NotificationType

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "Job",
    "JobStatus",
    "Bid",
    "BidStatus",
    "Project",
    "ProjectStatus",
    "Milestone",
    "MilestoneStatus",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "CustomerProfile",
    "ProviderProfile",
    "Notification",
    "NotificationType",
]
