from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.core.config import get_settings
from postureledger.core.errors import DeviceAuthError, DeviceNotFoundError, EnrollmentError
from postureledger.domain.models import (
    DeviceCheckin,
    DeviceCompliance,
    DeviceEnrollment,
    EnrollmentToken,
    Subject,
    User,
)
from postureledger.services.audit import record_event
from postureledger.services.compliance.control_status import REMOVED, recompute_control_statuses
from postureledger.services.compliance.device_posture import (
    ComplianceStatus,
    DevicePosture,
    classify_posture,
)
from postureledger.services.compliance.engine import RunSummary, process_device_checkin
from postureledger.services.compliance.risks import mitigate_subject_risks
from postureledger.services.compliance.task_status import as_utc
from postureledger.services.ownership import resolve_owner


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnrolledDevice:
    device_id: str
    api_key: str


@dataclass(frozen=True)
class CheckinOutcome:
    compliance_status: ComplianceStatus
    run: RunSummary


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


async def create_enrollment_token(
    session: AsyncSession,
    *,
    organization_id: str,
    actor_id: str | None,
    ttl_hours: int | None = None,
    now: datetime | None = None,
) -> EnrollmentToken:
    now = now or datetime.now(timezone.utc)
    ttl = ttl_hours if ttl_hours is not None else get_settings().enrollment_token_ttl_hours
    token = EnrollmentToken(
        organization_id=organization_id,
        token=secrets.token_urlsafe(32),
        created_by=actor_id,
        expires_at=now + timedelta(hours=ttl),
    )
    session.add(token)
    await session.commit()
    logger.info("enrollment_token_created org=%s token_id=%s", organization_id, token.id)
    return token


async def enroll_device(
    session: AsyncSession,
    *,
    token_value: str,
    hostname: str,
    os_type: str | None = None,
    os_version: str | None = None,
    serial_number: str | None = None,
    now: datetime | None = None,
) -> EnrolledDevice:
    """Exchange a single-use enrollment token for a per-device key.

    The raw key is returned once; only its SHA-256 digest is stored.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(select(EnrollmentToken).where(EnrollmentToken.token == token_value))
    token = result.scalar_one_or_none()
    if token is None:
        raise EnrollmentError("Invalid enrollment token", code="ENROLLMENT_TOKEN_INVALID", status_code=401)
    if token.used_at is not None:
        raise EnrollmentError("Enrollment token already used", code="ENROLLMENT_TOKEN_USED", status_code=409)
    if now > as_utc(token.expires_at):
        raise EnrollmentError("Enrollment token expired", code="ENROLLMENT_TOKEN_EXPIRED", status_code=410)

    organization_id = token.organization_id
    owner_id = await resolve_owner(session, organization_id, token.created_by)
    match = [Subject.hostname == hostname]
    if serial_number:
        match.append(Subject.serial_number == serial_number)
    result = await session.execute(
        select(Subject)
        .where(Subject.organization_id == organization_id, Subject.kind == "DEVICE", or_(*match))
        .order_by(Subject.created_at)
        .limit(1)
    )
    subject = result.scalar_one_or_none()
    if subject is None:
        subject = Subject(
            organization_id=organization_id,
            kind="DEVICE",
            name=hostname,
            criticality="HIGH",
            owner_id=owner_id,
            description="Managed endpoint enrolled via the device agent",
        )
        session.add(subject)
    subject.hostname = hostname
    subject.os_type = os_type
    subject.os_version = os_version
    if serial_number:
        subject.serial_number = serial_number
    subject.status = "ACTIVE"
    await session.flush()

    api_key = secrets.token_hex(32)
    result = await session.execute(select(DeviceEnrollment).where(DeviceEnrollment.subject_id == subject.id))
    enrollment = result.scalar_one_or_none()
    if enrollment is None:
        enrollment = DeviceEnrollment(organization_id=organization_id, subject_id=subject.id)
        session.add(enrollment)
    enrollment.api_key_hash = hash_api_key(api_key)
    enrollment.revoked = False
    enrollment.enrolled_at = now
    enrollment.last_seen_at = now
    token.used_at = now
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="device",
        actor_id=token.created_by,
        event_type="device.enrolled",
        resource_type="subject",
        resource_id=subject.id,
        metadata={"hostname": hostname, "os_type": os_type},
    )
    await session.commit()
    logger.info("device_enrolled org=%s subject=%s", organization_id, subject.id)
    return EnrolledDevice(device_id=subject.id, api_key=api_key)


async def authenticate_device(session: AsyncSession, *, device_id: str | None, api_key: str | None) -> DeviceEnrollment:
    if not device_id or not api_key:
        raise DeviceAuthError("Missing device credentials")
    result = await session.execute(
        select(DeviceEnrollment).where(DeviceEnrollment.subject_id == device_id, DeviceEnrollment.revoked.is_(False))
    )
    enrollment = result.scalar_one_or_none()
    if enrollment is None:
        raise DeviceAuthError("Device not enrolled or revoked")
    if not hmac.compare_digest(enrollment.api_key_hash, hash_api_key(api_key)):
        raise DeviceAuthError("Invalid device key")
    return enrollment


async def record_checkin(
    session: AsyncSession,
    *,
    enrollment: DeviceEnrollment,
    posture: DevicePosture,
    now: datetime | None = None,
) -> CheckinOutcome | None:
    """Store the raw report, refresh the snapshot, then reconcile device risks.

    Returns ``None`` when the enrolled subject no longer exists.
    """
    now = now or datetime.now(timezone.utc)
    subject = await session.get(Subject, enrollment.subject_id)
    if subject is None:
        return None
    session.add(DeviceCheckin(subject_id=subject.id, payload_json=posture.raw(), received_at=now))
    if posture.os_version:
        subject.os_version = posture.os_version
    if posture.hostname:
        subject.hostname = posture.hostname

    status = classify_posture(posture)
    snapshot = await session.get(DeviceCompliance, subject.id)
    if snapshot is None:
        snapshot = DeviceCompliance(subject_id=subject.id)
        session.add(snapshot)
    for name, value in posture.flags().items():
        setattr(snapshot, name, value)
    snapshot.compliance_status = status
    snapshot.last_checked_at = now
    enrollment.last_seen_at = now
    await session.commit()

    run = await process_device_checkin(session, subject=subject, posture=posture, now=now)
    logger.info("device_checkin subject=%s status=%s", subject.id, status)
    return CheckinOutcome(compliance_status=status, run=run)


async def get_compliance(session: AsyncSession, organization_id: str, device_id: str) -> DeviceCompliance | None:
    result = await session.execute(
        select(DeviceCompliance)
        .join(Subject, Subject.id == DeviceCompliance.subject_id)
        .where(Subject.organization_id == organization_id, Subject.id == device_id)
    )
    return result.scalar_one_or_none()


@dataclass(frozen=True)
class ManagedDevice:
    subject: Subject
    enrollment: DeviceEnrollment
    compliance: DeviceCompliance | None


async def list_devices(session: AsyncSession, organization_id: str) -> list[ManagedDevice]:
    """Every enrolled device of the organization, revoked ones included, newest first."""
    result = await session.execute(
        select(Subject, DeviceEnrollment, DeviceCompliance)
        .join(DeviceEnrollment, DeviceEnrollment.subject_id == Subject.id)
        .outerjoin(DeviceCompliance, DeviceCompliance.subject_id == Subject.id)
        .where(Subject.organization_id == organization_id, Subject.kind == "DEVICE")
        .order_by(Subject.created_at.desc(), Subject.id)
    )
    return [ManagedDevice(subject, enrollment, compliance) for subject, enrollment, compliance in result.all()]


async def _find_device(session: AsyncSession, organization_id: str, device_id: str) -> Subject | None:
    result = await session.execute(
        select(Subject).where(
            Subject.id == device_id,
            Subject.organization_id == organization_id,
            Subject.kind == "DEVICE",
        )
    )
    return result.scalar_one_or_none()


async def list_checkins(
    session: AsyncSession,
    organization_id: str,
    device_id: str,
    *,
    limit: int = 20,
) -> list[DeviceCheckin]:
    if await _find_device(session, organization_id, device_id) is None:
        raise DeviceNotFoundError("Device not found")
    result = await session.execute(
        select(DeviceCheckin)
        .where(DeviceCheckin.subject_id == device_id)
        .order_by(DeviceCheckin.received_at.desc(), DeviceCheckin.id.desc())
        .limit(max(1, min(limit, 100)))
    )
    return list(result.scalars().all())


async def revoke_device(
    session: AsyncSession,
    *,
    organization_id: str,
    device_id: str,
    actor_id: str | None,
    now: datetime | None = None,
) -> ManagedDevice:
    """Revoke the device key and take the device out of the compliance roll-up.

    Open device risks are mitigated; enrolling the same host again restores it.
    """
    now = now or datetime.now(timezone.utc)
    subject = await _find_device(session, organization_id, device_id)
    result = await session.execute(select(DeviceEnrollment).where(DeviceEnrollment.subject_id == device_id))
    enrollment = result.scalar_one_or_none()
    if subject is None or enrollment is None:
        raise DeviceNotFoundError("Device not found")
    enrollment.revoked = True
    subject.status = REMOVED
    mitigated = await mitigate_subject_risks(
        session,
        organization_id=organization_id,
        subject_ids=[subject.id],
        now=now,
        reason="device_revoked",
        actor_id=actor_id,
    )
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="device.revoked",
        resource_type="subject",
        resource_id=subject.id,
        metadata={"hostname": subject.hostname, "risks_mitigated": mitigated},
    )
    await session.commit()
    await recompute_control_statuses(session, organization_id)
    logger.info("device_revoked org=%s subject=%s risks_mitigated=%s", organization_id, subject.id, mitigated)
    return ManagedDevice(subject, enrollment, await session.get(DeviceCompliance, subject.id))


async def reassign_device_owner(
    session: AsyncSession,
    *,
    organization_id: str,
    device_id: str,
    owner_id: str,
    actor_id: str | None,
) -> Subject:
    subject = await _find_device(session, organization_id, device_id)
    if subject is None:
        raise DeviceNotFoundError("Device not found")
    owner = await session.execute(select(User.id).where(User.id == owner_id, User.organization_id == organization_id))
    if owner.scalar_one_or_none() is None:
        raise DeviceNotFoundError("User not found in organization")
    previous = subject.owner_id
    subject.owner_id = owner_id
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="device.owner_changed",
        resource_type="subject",
        resource_id=subject.id,
        metadata={"from": previous, "to": owner_id},
    )
    await session.commit()
    return subject


async def list_enrollment_tokens(session: AsyncSession, organization_id: str) -> list[EnrollmentToken]:
    result = await session.execute(
        select(EnrollmentToken)
        .where(EnrollmentToken.organization_id == organization_id)
        .order_by(EnrollmentToken.created_at.desc(), EnrollmentToken.id)
    )
    return list(result.scalars().all())


async def revoke_enrollment_token(
    session: AsyncSession, *, organization_id: str, token_id: str, actor_id: str | None
) -> bool:
    """Delete an enrollment token so it can no longer enroll a device."""
    result = await session.execute(
        select(EnrollmentToken).where(
            EnrollmentToken.id == token_id, EnrollmentToken.organization_id == organization_id
        )
    )
    token = result.scalar_one_or_none()
    if token is None:
        return False
    await session.delete(token)
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="enrollment_token.revoked",
        resource_type="enrollment_token",
        resource_id=token_id,
    )
    await session.commit()
    return True
