from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import Control
from postureledger.services.compliance.checks import CONTROL_CATALOG


logger = logging.getLogger(__name__)


async def seed_controls(session: AsyncSession, organization_id: str) -> list[Control]:
    """Create any catalog control the organization is missing; returns the new rows."""
    result = await session.execute(
        select(Control.iso_reference).where(Control.organization_id == organization_id)
    )
    existing = set(result.scalars().all())
    created: list[Control] = []
    for reference, title in CONTROL_CATALOG.items():
        if reference in existing:
            continue
        control = Control(organization_id=organization_id, iso_reference=reference, title=title)
        try:
            async with session.begin_nested():
                session.add(control)
        except IntegrityError:
            continue
        created.append(control)
    await session.commit()
    if created:
        logger.info("controls_seeded org=%s count=%s", organization_id, len(created))
    return created


async def list_controls(
    session: AsyncSession, organization_id: str, *, status: str | None = None
) -> list[Control]:
    stmt = select(Control).where(Control.organization_id == organization_id)
    if status is not None:
        stmt = stmt.where(Control.status == status)
    result = await session.execute(stmt.order_by(Control.iso_reference))
    return list(result.scalars().all())
