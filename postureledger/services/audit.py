from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import AuditEvent
from postureledger.persistence.db import SessionLocal
from postureledger.services.background import get_background_tasks


logger = logging.getLogger(__name__)

# Substring match on lowercased keys; covers access_token, client_secret, api_key.
_SENSITIVE_MARKERS = ("api_key", "authorization", "token", "secret", "password")
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` with credential-like keys masked at any depth."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED
            if any(marker in str(key).lower() for marker in _SENSITIVE_MARKERS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession | None = None,
    organization_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one activity row.

    With ``session`` the row joins the caller's unit of work and is only
    committed when ``commit`` is set; without one it is written on its own
    session. Write failures are logged and swallowed unless ``best_effort``
    is off.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
    )
    own_session = session is None
    target = SessionLocal() if own_session else session
    try:
        target.add(event)
        if own_session or commit:
            await target.commit()
    except SQLAlchemyError as exc:
        if own_session or commit:
            await target.rollback()
        logger.log(
            logging.WARNING if best_effort else logging.ERROR,
            "audit_event_write_failed event_type=%s org=%s",
            event_type,
            organization_id,
            exc_info=exc,
        )
        if not best_effort:
            raise
    finally:
        if own_session:
            await target.close()


def record_event_background(**kwargs: Any) -> None:
    # Off the caller's path; failures land on the background registry instead.
    kwargs.pop("session", None)
    kwargs["best_effort"] = False
    get_background_tasks().spawn(record_event(**kwargs), label=f"audit:{kwargs.get('event_type')}")


def record_system_event(*, event_type: str, metadata: dict[str, Any] | None = None) -> None:
    record_event_background(
        organization_id=None,
        actor_type="system",
        actor_id=None,
        event_type=event_type,
        metadata=metadata,
    )
