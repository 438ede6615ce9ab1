from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from postureledger.services.compliance.checks import FAIL, PASS


TaskStatus = Literal["Due_soon", "Needs_remediation", "OK", "Overdue"]

DUE_SOON: TaskStatus = "Due_soon"
NEEDS_REMEDIATION: TaskStatus = "Needs_remediation"
OK: TaskStatus = "OK"
OVERDUE: TaskStatus = "Overdue"

TASK_STATUSES: tuple[TaskStatus, ...] = (DUE_SOON, NEEDS_REMEDIATION, OK, OVERDUE)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_display_status(
    stored: str,
    due_date: datetime,
    completed_at: datetime | None,
    now: datetime | None = None,
) -> TaskStatus:
    """Derive the status shown for a tracked item; never written back."""
    now = as_utc(now) or datetime.now(timezone.utc)
    if completed_at is not None:
        return OK
    if as_utc(due_date) < now:
        return OVERDUE
    # Inside or outside the due-soon window, a manual remediation override is kept.
    if stored == NEEDS_REMEDIATION:
        return NEEDS_REMEDIATION
    return DUE_SOON


def is_due_soon(
    due_date: datetime,
    completed_at: datetime | None,
    *,
    now: datetime | None = None,
    window_days: int = 14,
) -> bool:
    if completed_at is not None:
        return False
    now = as_utc(now) or datetime.now(timezone.utc)
    due = as_utc(due_date)
    return now <= due <= now + timedelta(days=window_days)


def is_overdue(due_date: datetime, completed_at: datetime | None, *, now: datetime | None = None) -> bool:
    now = as_utc(now) or datetime.now(timezone.utc)
    return completed_at is None and as_utc(due_date) < now


def status_from_verdict(result: str) -> TaskStatus:
    if result == PASS:
        return OK
    if result == FAIL:
        return NEEDS_REMEDIATION
    return DUE_SOON
