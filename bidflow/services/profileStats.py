"""
Party statistics counters.

Counters are updated with atomic ``SET col = col + n`` statements inside the
caller's transaction, so they commit or roll back with the workflow step
that earned them. Profile rows are created on first use.
"""

from __future__ import annotations

import logging
import uuid
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bidflow.models.profile import CustomerProfile, ProviderProfile

logger = logging.getLogger(__name__)

ProfileT = TypeVar("ProfileT", ProviderProfile, CustomerProfile)


async def get_or_create_profile(
    session: AsyncSession,
    model: type[ProfileT],
    user_id: uuid.UUID,
) -> ProfileT:
    """Return the profile row for ``user_id``, inserting it if missing.

    The insert runs in a savepoint so a concurrent creator only costs a
    re-read instead of failing the surrounding transaction.
    """
    stmt = select(model).where(model.user_id == user_id)
    profile = (await session.execute(stmt)).scalar_one_or_none()
    if profile is not None:
        return profile

    try:
        async with session.begin_nested():
            profile = model(user_id=user_id)
            session.add(profile)
    except IntegrityError:
        logger.debug("%s for user %s created concurrently", model.__name__, user_id)
        profile = (await session.execute(stmt)).scalar_one()
    return profile


async def increment_provider_stats(
    session: AsyncSession,
    provider_id: uuid.UUID,
    *,
    bids_submitted: int = 0,
    bids_won: int = 0,
    projects_completed: int = 0,
    earned_cents: int = 0,
) -> None:
    await get_or_create_profile(session, ProviderProfile, provider_id)
    await session.execute(
        update(ProviderProfile)
        .where(ProviderProfile.user_id == provider_id)
        .values(
            total_bids_submitted=ProviderProfile.total_bids_submitted + bids_submitted,
            total_bids_won=ProviderProfile.total_bids_won + bids_won,
            total_projects_completed=ProviderProfile.total_projects_completed + projects_completed,
            total_earned_cents=ProviderProfile.total_earned_cents + earned_cents,
        )
        .execution_options(synchronize_session=False)
    )


async def increment_customer_stats(
    session: AsyncSession,
    customer_id: uuid.UUID,
    *,
    projects_completed: int = 0,
    spent_cents: int = 0,
) -> None:
    await get_or_create_profile(session, CustomerProfile, customer_id)
    await session.execute(
        update(CustomerProfile)
        .where(CustomerProfile.user_id == customer_id)
        .values(
            total_projects_completed=CustomerProfile.total_projects_completed + projects_completed,
            total_spent_cents=CustomerProfile.total_spent_cents + spent_cents,
        )
        .execution_options(synchronize_session=False)
    )
