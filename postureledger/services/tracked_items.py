from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.core.config import get_settings
from postureledger.core.errors import (
    TrackedItemForbiddenError,
    TrackedItemNotFoundError,
    TrackedItemStateError,
)
from postureledger.domain.models import (
    Control,
    TrackedItem,
    TrackedItemControl,
    TrackedItemHistory,
    TrackedItemRun,
)
from postureledger.services.compliance.checks import checks_for_scope
from postureledger.services.compliance.task_status import (
    OK,
    TASK_STATUSES,
    compute_display_status,
    is_due_soon,
    is_overdue,
)
from postureledger.services.ownership import ADMIN_ROLES, resolve_owner


logger = logging.getLogger(__name__)

CATEGORIES = ("Custom", "Engineering", "HR", "IT", "Policy", "Risks")
ITEM_TYPES = ("Document", "Automated")

PREDEFINED_POLICY_ITEMS: tuple[str, ...] = (
    "Employee termination security policy",
    "Secure engineering principles defined",
    "Planning changes of the ISMS",
    "Track and address nonconformities",
    "Management Review presentation example",
    "Management Review records example",
    "Internal audit report",
    "Management review of ISMS",
    "Incident report or root cause analysis",
    "Publicly available terms of service",
    "Test of incident response plan",
    "Maintain data inventory map",
    "Proof of policy availability to employees",
    "Audit Cycle identified",
)


@dataclass(frozen=True)
class ItemSummary:
    total: int
    completed: int
    pass_percentage: int
    overdue: int
    due_soon: int


def display_status(item: TrackedItem, now: datetime | None = None) -> str:
    return compute_display_status(item.status, item.due_date, item.completed_at, now)


def is_admin(role: str | None) -> bool:
    return role in ADMIN_ROLES


def _history(item_id: str, actor_id: str | None, change_type: str, old: Any = None, new: Any = None) -> TrackedItemHistory:
    return TrackedItemHistory(
        item_id=item_id,
        changed_by=actor_id,
        change_type=change_type,
        old_value=None if old is None else str(old),
        new_value=None if new is None else str(new),
    )


async def get_item(session: AsyncSession, organization_id: str, item_id: str) -> TrackedItem:
    result = await session.execute(
        select(TrackedItem).where(TrackedItem.id == item_id, TrackedItem.organization_id == organization_id)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise TrackedItemNotFoundError("Tracked item not found")
    return item


async def linked_control_ids(session: AsyncSession, item_id: str) -> list[str]:
    result = await session.execute(
        select(TrackedItemControl.control_id).where(TrackedItemControl.item_id == item_id)
    )
    return sorted(result.scalars().all())


async def _link_controls(session: AsyncSession, item: TrackedItem, control_ids: Iterable[str]) -> None:
    wanted = set(control_ids)
    if not wanted:
        return
    result = await session.execute(
        select(Control.id).where(Control.organization_id == item.organization_id, Control.id.in_(wanted))
    )
    for control_id in result.scalars().all():
        session.add(TrackedItemControl(item_id=item.id, control_id=control_id))


async def list_items(
    session: AsyncSession,
    organization_id: str,
    *,
    category: str | None = None,
    owner_id: str | None = None,
    item_type: str | None = None,
    status: str | None = None,
    search: str | None = None,
    now: datetime | None = None,
) -> list[tuple[TrackedItem, str]]:
    """Items ordered by due date, each paired with its display status."""
    stmt = select(TrackedItem).where(TrackedItem.organization_id == organization_id)
    if category:
        stmt = stmt.where(TrackedItem.category == category)
    if owner_id:
        stmt = stmt.where(TrackedItem.owner_id == owner_id)
    if item_type:
        stmt = stmt.where(TrackedItem.item_type == item_type)
    if search:
        stmt = stmt.where(TrackedItem.name.ilike(f"%{search}%"))
    result = await session.execute(stmt.order_by(TrackedItem.due_date, TrackedItem.name))
    rows = [(item, display_status(item, now)) for item in result.scalars().all()]
    # Status is derived, so filter after deriving it.
    if status:
        rows = [row for row in rows if row[1] == status]
    return rows


async def summarize(session: AsyncSession, organization_id: str, *, now: datetime | None = None) -> ItemSummary:
    now = now or datetime.now(timezone.utc)
    window = get_settings().due_soon_days
    result = await session.execute(select(TrackedItem).where(TrackedItem.organization_id == organization_id))
    items = list(result.scalars().all())
    total = len(items)
    completed = sum(1 for item in items if item.completed_at is not None)
    return ItemSummary(
        total=total,
        completed=completed,
        pass_percentage=round(completed * 100 / total) if total else 0,
        overdue=sum(1 for item in items if is_overdue(item.due_date, item.completed_at, now=now)),
        due_soon=sum(
            1 for item in items if is_due_soon(item.due_date, item.completed_at, now=now, window_days=window)
        ),
    )


async def create_item(
    session: AsyncSession,
    *,
    organization_id: str,
    actor_id: str | None,
    name: str,
    category: str,
    item_type: str,
    due_date: datetime,
    owner_id: str | None = None,
    description: str | None = None,
    check_name: str | None = None,
    control_ids: Iterable[str] = (),
) -> TrackedItem:
    item = TrackedItem(
        organization_id=organization_id,
        name=name,
        description=description,
        category=category,
        item_type=item_type,
        check_name=check_name,
        owner_id=owner_id or actor_id,
        status="Due_soon",
        due_date=due_date,
    )
    try:
        async with session.begin_nested():
            session.add(item)
    except IntegrityError as exc:
        raise TrackedItemStateError(f'A tracked item named "{name}" already exists') from exc
    await _link_controls(session, item, control_ids)
    session.add(_history(item.id, actor_id, "CREATED", new=name))
    await session.commit()
    logger.info("tracked_item_created org=%s item=%s type=%s", organization_id, item.id, item_type)
    return item


async def update_item(
    session: AsyncSession,
    *,
    organization_id: str,
    item_id: str,
    actor_id: str | None,
    actor_role: str | None,
    changes: dict[str, Any],
) -> TrackedItem:
    """Apply manual edits; a stored status set here is the override the display keeps."""
    item = await get_item(session, organization_id, item_id)
    if not is_admin(actor_role) and item.owner_id != actor_id:
        raise TrackedItemForbiddenError("Only the owner or an admin can update this item")
    status = changes.get("status")
    if status is not None and status not in TASK_STATUSES:
        raise TrackedItemStateError(f"Unknown status {status}")
    if status is not None and status != item.status:
        session.add(_history(item.id, actor_id, "STATUS_CHANGED", item.status, status))
        item.status = status
        if status != OK:
            item.completed_at = None
    owner_id = changes.get("owner_id")
    if owner_id is not None and owner_id != item.owner_id:
        session.add(_history(item.id, actor_id, "OWNER_CHANGED", item.owner_id, owner_id))
        item.owner_id = owner_id
    due_date = changes.get("due_date")
    if due_date is not None and due_date != item.due_date:
        session.add(_history(item.id, actor_id, "DUE_DATE_UPDATED", item.due_date.isoformat(), due_date.isoformat()))
        item.due_date = due_date
    for field_name in ("name", "description", "category"):
        value = changes.get(field_name)
        if value is not None:
            setattr(item, field_name, value)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise TrackedItemStateError("A tracked item with that name already exists") from exc
    return item


async def complete_item(
    session: AsyncSession,
    *,
    organization_id: str,
    item_id: str,
    actor_id: str | None,
    actor_role: str | None,
    now: datetime | None = None,
) -> TrackedItem:
    now = now or datetime.now(timezone.utc)
    item = await get_item(session, organization_id, item_id)
    if not is_admin(actor_role) and item.owner_id != actor_id:
        raise TrackedItemForbiddenError("Only the owner or an admin can complete this item")
    if item.item_type == "Automated":
        raise TrackedItemStateError(
            "Automated tests cannot be manually completed; they are evaluated by their integration"
        )
    if item.completed_at is not None:
        raise TrackedItemStateError("Tracked item is already completed")
    old_status = item.status
    item.completed_at = now
    item.status = OK
    session.add(_history(item.id, actor_id, "COMPLETED", old_status, OK))
    await session.flush()
    await _promote_fully_completed_controls(session, item)
    await session.commit()
    logger.info("tracked_item_completed org=%s item=%s", organization_id, item.id)
    return item


async def _promote_fully_completed_controls(session: AsyncSession, item: TrackedItem) -> None:
    for control_id in await linked_control_ids(session, item.id):
        result = await session.execute(
            select(TrackedItem.completed_at)
            .join(TrackedItemControl, TrackedItemControl.item_id == TrackedItem.id)
            .where(TrackedItemControl.control_id == control_id)
        )
        if all(completed_at is not None for completed_at in result.scalars().all()):
            control = await session.get(Control, control_id)
            if control is not None and control.status != "IMPLEMENTED":
                logger.info("control_implemented_by_items control=%s", control.iso_reference)
                control.status = "IMPLEMENTED"


async def list_history(session: AsyncSession, organization_id: str, item_id: str) -> list[TrackedItemHistory]:
    await get_item(session, organization_id, item_id)
    result = await session.execute(
        select(TrackedItemHistory)
        .where(TrackedItemHistory.item_id == item_id)
        .order_by(TrackedItemHistory.created_at.desc(), TrackedItemHistory.id.desc())
    )
    return list(result.scalars().all())


async def list_runs(
    session: AsyncSession, organization_id: str, item_id: str, *, limit: int = 50
) -> list[TrackedItemRun]:
    item = await get_item(session, organization_id, item_id)
    if item.item_type != "Automated":
        raise TrackedItemStateError("Run history is only kept for Automated items")
    result = await session.execute(
        select(TrackedItemRun)
        .where(TrackedItemRun.item_id == item_id)
        .order_by(TrackedItemRun.executed_at.desc(), TrackedItemRun.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _existing_names(session: AsyncSession, organization_id: str) -> set[str]:
    result = await session.execute(select(TrackedItem.name).where(TrackedItem.organization_id == organization_id))
    return set(result.scalars().all())


async def seed_policy_items(
    session: AsyncSession,
    organization_id: str,
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> list[TrackedItem]:
    """Create the predefined Document items the organization is missing."""
    now = now or datetime.now(timezone.utc)
    owner_id = await resolve_owner(session, organization_id, actor_id)
    existing = await _existing_names(session, organization_id)
    due_date = now + timedelta(days=get_settings().seed_due_days)
    created: list[TrackedItem] = []
    for name in PREDEFINED_POLICY_ITEMS:
        if name in existing:
            continue
        item = TrackedItem(
            organization_id=organization_id,
            name=name,
            category="Policy",
            item_type="Document",
            owner_id=owner_id,
            status="Due_soon",
            due_date=due_date,
        )
        try:
            async with session.begin_nested():
                session.add(item)
        except IntegrityError:
            continue
        session.add(_history(item.id, actor_id, "CREATED", new=name))
        created.append(item)
    await session.commit()
    logger.info("policy_items_seeded org=%s created=%s", organization_id, len(created))
    return created


async def seed_automated_items(
    session: AsyncSession,
    organization_id: str,
    *,
    actor_id: str | None,
    now: datetime | None = None,
) -> list[TrackedItem]:
    """Create one Automated item per organization-scope check, linked to its controls."""
    now = now or datetime.now(timezone.utc)
    owner_id = await resolve_owner(session, organization_id, actor_id)
    existing = await _existing_names(session, organization_id)
    result = await session.execute(select(Control).where(Control.organization_id == organization_id))
    controls_by_ref = {control.iso_reference: control.id for control in result.scalars().all()}
    due_date = now + timedelta(days=get_settings().seed_due_days)
    created: list[TrackedItem] = []
    for definition in checks_for_scope("ORGANIZATION"):
        if definition.title in existing:
            continue
        item = TrackedItem(
            organization_id=organization_id,
            name=definition.title,
            category="Engineering",
            item_type="Automated",
            check_name=definition.name,
            owner_id=owner_id,
            status="Due_soon",
            due_date=due_date,
        )
        try:
            async with session.begin_nested():
                session.add(item)
        except IntegrityError:
            continue
        await _link_controls(
            session, item, [controls_by_ref[ref] for ref in definition.iso_refs if ref in controls_by_ref]
        )
        session.add(_history(item.id, actor_id, "CREATED", new=definition.title))
        created.append(item)
    await session.commit()
    logger.info("automated_items_seeded org=%s created=%s", organization_id, len(created))
    return created
