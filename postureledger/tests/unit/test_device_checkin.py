from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from postureledger.core.errors import DeviceAuthError, EnrollmentError
from postureledger.domain.models import Control, DeviceCheckin, Risk, Subject
from postureledger.persistence.db import SessionLocal
from postureledger.services.compliance.device_posture import DevicePosture, classify_posture
from postureledger.services.controls import seed_controls
from postureledger.services.devices import (
    authenticate_device,
    create_enrollment_token,
    enroll_device,
    get_compliance,
    hash_api_key,
    record_checkin,
)
from postureledger.tests.utils.records import create_organization, create_user


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _posture(**overrides: bool) -> DevicePosture:
    payload = {
        "diskEncryptionEnabled": True,
        "screenLockEnabled": True,
        "firewallEnabled": True,
        "systemIntegrityEnabled": True,
        "autoUpdateEnabled": True,
        "osVersion": "14.6",
    }
    payload.update(overrides)
    return DevicePosture.model_validate(payload)


async def _enrolled_device(org_id: str, actor_id: str | None = None):
    async with SessionLocal() as session:
        token = await create_enrollment_token(session, organization_id=org_id, actor_id=actor_id, now=NOW)
        device = await enroll_device(
            session,
            token_value=token.token,
            hostname="laptop-01",
            os_type="macOS",
            os_version="14.5",
            serial_number="C02XYZ",
            now=NOW,
        )
    return token, device


async def _checkin(device, posture: DevicePosture, *, at: datetime = NOW):
    async with SessionLocal() as session:
        enrollment = await authenticate_device(session, device_id=device.device_id, api_key=device.api_key)
        return await record_checkin(session, enrollment=enrollment, posture=posture, now=at)


def test_posture_requires_strict_booleans() -> None:
    with pytest.raises(ValidationError):
        _posture(diskEncryptionEnabled="yes")
    with pytest.raises(ValidationError):
        DevicePosture.model_validate({"diskEncryptionEnabled": True})


def test_legacy_integrity_key_is_accepted() -> None:
    posture = DevicePosture.model_validate(
        {
            "diskEncryptionEnabled": True,
            "screenLockEnabled": True,
            "firewallEnabled": True,
            "systemIntegrityProtectionEnabled": False,
            "autoUpdateEnabled": True,
        }
    )
    assert posture.system_integrity_enabled is False
    assert classify_posture(posture) == "NON_COMPLIANT"


@pytest.mark.asyncio
async def test_enrollment_stores_only_the_key_digest() -> None:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN")
    _token, device = await _enrolled_device(org_id, admin_id)

    async with SessionLocal() as session:
        enrollment = await authenticate_device(session, device_id=device.device_id, api_key=device.api_key)
        subject = await session.get(Subject, device.device_id)
    assert enrollment.api_key_hash == hash_api_key(device.api_key)
    assert enrollment.api_key_hash != device.api_key
    assert subject.kind == "DEVICE"
    assert subject.owner_id == admin_id
    assert subject.serial_number == "C02XYZ"


@pytest.mark.asyncio
async def test_enrollment_token_is_single_use() -> None:
    org_id = await create_organization()
    token, _device = await _enrolled_device(org_id)
    async with SessionLocal() as session:
        with pytest.raises(EnrollmentError) as excinfo:
            await enroll_device(session, token_value=token.token, hostname="laptop-02", now=NOW)
    assert excinfo.value.status_code == 409
    assert excinfo.value.code == "ENROLLMENT_TOKEN_USED"


@pytest.mark.asyncio
async def test_expired_and_unknown_tokens_are_rejected() -> None:
    org_id = await create_organization()
    async with SessionLocal() as session:
        token = await create_enrollment_token(session, organization_id=org_id, actor_id=None, ttl_hours=1, now=NOW)
        with pytest.raises(EnrollmentError) as expired:
            await enroll_device(session, token_value=token.token, hostname="laptop-01", now=NOW + timedelta(hours=2))
        with pytest.raises(EnrollmentError) as unknown:
            await enroll_device(session, token_value="not-a-token", hostname="laptop-01", now=NOW)
    assert expired.value.status_code == 410
    assert unknown.value.status_code == 401


@pytest.mark.asyncio
async def test_wrong_device_key_is_rejected() -> None:
    org_id = await create_organization()
    _token, device = await _enrolled_device(org_id)
    async with SessionLocal() as session:
        with pytest.raises(DeviceAuthError):
            await authenticate_device(session, device_id=device.device_id, api_key="0" * 64)
        with pytest.raises(DeviceAuthError):
            await authenticate_device(session, device_id=None, api_key=device.api_key)


@pytest.mark.asyncio
async def test_single_failing_flag_opens_exactly_one_risk() -> None:
    org_id = await create_organization()
    async with SessionLocal() as session:
        await seed_controls(session, org_id)
    _token, device = await _enrolled_device(org_id)

    outcome = await _checkin(device, _posture(diskEncryptionEnabled=False))

    assert outcome.compliance_status == "NON_COMPLIANT"
    assert outcome.run.verdicts == {"Pass": 4, "Fail": 1}
    assert outcome.run.risk_transitions == {"CREATED": 1}
    async with SessionLocal() as session:
        risks = (await session.execute(select(Risk).where(Risk.organization_id == org_id))).scalars().all()
        snapshot = await get_compliance(session, org_id, device.device_id)
        controls = {
            control.iso_reference: control.status
            for control in (await session.execute(select(Control).where(Control.organization_id == org_id))).scalars()
        }
    assert len(risks) == 1
    assert risks[0].title == "Endpoint without disk encryption: laptop-01"
    assert risks[0].status == "OPEN"
    assert snapshot.disk_encryption_enabled is False
    assert snapshot.compliance_status == "NON_COMPLIANT"
    assert controls["A.8.24"] == "NOT_IMPLEMENTED"
    assert controls["A.8.20"] == "IMPLEMENTED"


@pytest.mark.asyncio
async def test_fixed_device_mitigates_its_risk() -> None:
    org_id = await create_organization()
    _token, device = await _enrolled_device(org_id)

    await _checkin(device, _posture(screenLockEnabled=False))
    outcome = await _checkin(device, _posture(), at=NOW + timedelta(hours=1))
    again = await _checkin(device, _posture(), at=NOW + timedelta(hours=2))

    assert outcome.compliance_status == "COMPLIANT"
    assert outcome.run.risk_transitions == {"MITIGATED": 1}
    assert again.run.risk_transitions == {}
    async with SessionLocal() as session:
        risks = (await session.execute(select(Risk).where(Risk.organization_id == org_id))).scalars().all()
        checkins = await session.execute(
            select(func.count(DeviceCheckin.id)).where(DeviceCheckin.subject_id == device.device_id)
        )
    assert [(risk.title, risk.status) for risk in risks] == [
        ("Device without automatic screen lock: laptop-01", "MITIGATED")
    ]
    assert checkins.scalar_one() == 3
