from __future__ import annotations

import logging

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import User


logger = logging.getLogger(__name__)

# Earlier roles win; ties go to the longest-standing user.
ROLE_PRIORITY: tuple[str, ...] = ("ORG_ADMIN", "SUPER_ADMIN", "SECURITY_OWNER")
ADMIN_ROLES = frozenset(ROLE_PRIORITY)


async def resolve_owner(
    session: AsyncSession,
    organization_id: str,
    fallback_actor_id: str | None = None,
) -> str | None:
    """Pick the user who owns engine-created records for an organization.

    Returns the highest-priority active admin, or ``fallback_actor_id`` (the
    actor that triggered the run) when the organization has none.
    """
    priority = case(
        {role: index for index, role in enumerate(ROLE_PRIORITY)},
        value=User.role,
    )
    result = await session.execute(
        select(User.id)
        .where(
            User.organization_id == organization_id,
            User.is_active.is_(True),
            User.role.in_(ROLE_PRIORITY),
        )
        .order_by(priority, User.created_at, User.id)
        .limit(1)
    )
    owner_id = result.scalar_one_or_none()
    if owner_id is None:
        logger.info("owner_fallback org=%s actor=%s", organization_id, fallback_actor_id)
        return fallback_actor_id
    return owner_id
