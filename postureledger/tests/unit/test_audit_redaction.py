from __future__ import annotations

import pytest
from sqlalchemy import select

from postureledger.domain.models import AuditEvent
from postureledger.persistence.db import SessionLocal
from postureledger.services.audit import record_event, record_event_background, sanitize_metadata
from postureledger.services.background import get_background_tasks


def test_sanitize_metadata_redacts_nested_credentials() -> None:
    payload = {
        "hostname": "laptop-01",
        "api_key": "abc",
        "nested": {"Authorization": "Bearer xyz", "access_token": "gho_123", "safe": 1},
        "items": [{"client_secret": "s"}, {"ok": True}],
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["hostname"] == "laptop-01"
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["Authorization"] == "[REDACTED]"
    assert sanitized["nested"]["access_token"] == "[REDACTED]"
    assert sanitized["nested"]["safe"] == 1
    assert sanitized["items"][0]["client_secret"] == "[REDACTED]"
    assert sanitized["items"][1] == {"ok": True}


@pytest.mark.asyncio
async def test_record_event_persists_sanitized_metadata() -> None:
    await record_event(
        organization_id="org-1",
        actor_type="user",
        actor_id="user-1",
        event_type="integration.connected",
        metadata={"token": "gho_secret", "login": "acme"},
    )
    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.metadata_json == {"token": "[REDACTED]", "login": "acme"}
    assert event.outcome == "success"


@pytest.mark.asyncio
async def test_background_events_land_after_drain() -> None:
    record_event_background(
        organization_id="org-1",
        actor_type="system",
        actor_id=None,
        event_type="device.checkin",
        metadata={"subject": "laptop-01"},
    )
    await get_background_tasks().drain()
    async with SessionLocal() as session:
        events = (await session.execute(select(AuditEvent.event_type))).scalars().all()
    assert events == ["device.checkin"]
