from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import (
    DeviceCredentials,
    Principal,
    get_current_principal,
    get_db,
    get_device_credentials,
    require_admin,
)
from postureledger.apps.api.openapi import AGENT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.services.compliance.device_posture import DevicePosture
from postureledger.services.devices import (
    ManagedDevice,
    authenticate_device,
    create_enrollment_token,
    enroll_device,
    get_compliance,
    list_checkins,
    list_devices,
    list_enrollment_tokens,
    reassign_device_owner,
    record_checkin,
    revoke_device,
    revoke_enrollment_token,
)


router = APIRouter(prefix="/agent", tags=["agent"], responses=AGENT_ERROR_RESPONSES)


class EnrollRequest(BaseModel):
    model_config = {"populate_by_name": True}

    token: str | None = None
    hostname: str | None = None
    os_type: str | None = Field(default=None, alias="osType")
    os_version: str | None = Field(default=None, alias="osVersion")
    serial_number: str | None = Field(default=None, alias="serialNumber")


class EnrollResponse(BaseModel):
    deviceId: str
    apiKey: str


class CheckinRequest(BaseModel):
    posture: DevicePosture


class CheckinResponse(BaseModel):
    ok: bool
    complianceStatus: str


class EnrollmentTokenRequest(BaseModel):
    model_config = {"extra": "forbid"}

    ttl_hours: int | None = Field(default=None, ge=1, le=24 * 30)


class EnrollmentTokenResponse(BaseModel):
    id: str
    token: str
    expires_at: str


class DeviceComplianceResponse(BaseModel):
    device_id: str
    compliance_status: str
    disk_encryption_enabled: bool
    screen_lock_enabled: bool
    firewall_enabled: bool
    system_integrity_enabled: bool
    auto_update_enabled: bool
    last_checked_at: str


@router.post(
    "/enroll",
    status_code=201,
    response_model=SuccessEnvelope[EnrollResponse] | EnrollResponse,
)
async def enroll(
    request: Request,
    payload: EnrollRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Unauthenticated: the single-use token is the credential.
    if not payload.token or not payload.hostname:
        raise HTTPException(
            status_code=400,
            detail={"code": "BAD_REQUEST", "message": "token and hostname are required"},
        )
    device = await enroll_device(
        db,
        token_value=payload.token,
        hostname=payload.hostname,
        os_type=payload.os_type,
        os_version=payload.os_version,
        serial_number=payload.serial_number,
    )
    data = EnrollResponse(deviceId=device.device_id, apiKey=device.api_key)
    return success_response(request=request, data=data)


@router.post("/checkin", response_model=SuccessEnvelope[CheckinResponse] | CheckinResponse)
async def checkin(
    request: Request,
    payload: CheckinRequest,
    credentials: DeviceCredentials = Depends(get_device_credentials),
    db: AsyncSession = Depends(get_db),
) -> dict:
    enrollment = await authenticate_device(db, device_id=credentials.device_id, api_key=credentials.api_key)
    outcome = await record_checkin(db, enrollment=enrollment, posture=payload.posture)
    if outcome is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Device not found"})
    data = CheckinResponse(ok=True, complianceStatus=outcome.compliance_status)
    return success_response(request=request, data=data)


@router.post(
    "/enrollment-tokens",
    status_code=201,
    response_model=SuccessEnvelope[EnrollmentTokenResponse] | EnrollmentTokenResponse,
)
async def issue_enrollment_token(
    request: Request,
    payload: EnrollmentTokenRequest | None = None,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    token = await create_enrollment_token(
        db,
        organization_id=principal.organization_id,
        actor_id=principal.actor_id,
        ttl_hours=payload.ttl_hours if payload else None,
    )
    data = EnrollmentTokenResponse(id=token.id, token=token.token, expires_at=token.expires_at.isoformat())
    return success_response(request=request, data=data)


@router.get(
    "/devices/{device_id}/compliance",
    response_model=SuccessEnvelope[DeviceComplianceResponse] | DeviceComplianceResponse,
)
async def device_compliance(
    request: Request,
    device_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await get_compliance(db, principal.organization_id, device_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "No posture reported"})
    data = DeviceComplianceResponse(
        device_id=snapshot.subject_id,
        compliance_status=snapshot.compliance_status,
        disk_encryption_enabled=snapshot.disk_encryption_enabled,
        screen_lock_enabled=snapshot.screen_lock_enabled,
        firewall_enabled=snapshot.firewall_enabled,
        system_integrity_enabled=snapshot.system_integrity_enabled,
        auto_update_enabled=snapshot.auto_update_enabled,
        last_checked_at=snapshot.last_checked_at.isoformat(),
    )
    return success_response(request=request, data=data)


class DeviceResponse(BaseModel):
    id: str
    hostname: str | None
    os_type: str | None
    os_version: str | None
    serial_number: str | None
    owner_id: str | None
    status: str
    revoked: bool
    enrolled_at: str
    last_seen_at: str | None
    compliance_status: str | None


class CheckinHistoryResponse(BaseModel):
    id: int
    received_at: str
    posture: dict[str, Any]


class OwnerRequest(BaseModel):
    model_config = {"extra": "forbid"}

    owner_id: str = Field(..., min_length=1)


class EnrollmentTokenSummary(BaseModel):
    id: str
    created_by: str | None
    expires_at: str
    used_at: str | None
    created_at: str | None


def _device_response(device: ManagedDevice) -> DeviceResponse:
    subject, enrollment = device.subject, device.enrollment
    return DeviceResponse(
        id=subject.id,
        hostname=subject.hostname,
        os_type=subject.os_type,
        os_version=subject.os_version,
        serial_number=subject.serial_number,
        owner_id=subject.owner_id,
        status=subject.status,
        revoked=enrollment.revoked,
        enrolled_at=enrollment.enrolled_at.isoformat(),
        last_seen_at=enrollment.last_seen_at.isoformat() if enrollment.last_seen_at else None,
        compliance_status=device.compliance.compliance_status if device.compliance else None,
    )


@router.get("/devices", response_model=SuccessEnvelope[list[DeviceResponse]] | list[DeviceResponse])
async def devices(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_devices(db, principal.organization_id)
    return success_response(request=request, data=[_device_response(device) for device in rows])


@router.get(
    "/devices/{device_id}/checkins",
    response_model=SuccessEnvelope[list[CheckinHistoryResponse]] | list[CheckinHistoryResponse],
)
async def device_checkins(
    request: Request,
    device_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_checkins(db, principal.organization_id, device_id, limit=limit)
    data = [
        CheckinHistoryResponse(id=row.id, received_at=row.received_at.isoformat(), posture=row.payload_json)
        for row in rows
    ]
    return success_response(request=request, data=data)


@router.delete("/devices/{device_id}", response_model=SuccessEnvelope[DeviceResponse] | DeviceResponse)
async def delete_device(
    request: Request,
    device_id: str,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    device = await revoke_device(
        db, organization_id=principal.organization_id, device_id=device_id, actor_id=principal.actor_id
    )
    return success_response(request=request, data=_device_response(device))


@router.patch("/devices/{device_id}/owner", response_model=SuccessEnvelope[dict[str, str]] | dict[str, str])
async def change_device_owner(
    request: Request,
    device_id: str,
    payload: OwnerRequest,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    subject = await reassign_device_owner(
        db,
        organization_id=principal.organization_id,
        device_id=device_id,
        owner_id=payload.owner_id,
        actor_id=principal.actor_id,
    )
    return success_response(request=request, data={"id": subject.id, "owner_id": payload.owner_id})


@router.get(
    "/enrollment-tokens",
    response_model=SuccessEnvelope[list[EnrollmentTokenSummary]] | list[EnrollmentTokenSummary],
)
async def enrollment_tokens(
    request: Request,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Token values are shown once at creation and never listed.
    tokens = await list_enrollment_tokens(db, principal.organization_id)
    data = [
        EnrollmentTokenSummary(
            id=token.id,
            created_by=token.created_by,
            expires_at=token.expires_at.isoformat(),
            used_at=token.used_at.isoformat() if token.used_at else None,
            created_at=token.created_at.isoformat() if token.created_at else None,
        )
        for token in tokens
    ]
    return success_response(request=request, data=data)


@router.delete("/enrollment-tokens/{token_id}", status_code=204)
async def delete_enrollment_token(
    token_id: str,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> Response:
    deleted = await revoke_enrollment_token(
        db, organization_id=principal.organization_id, token_id=token_id, actor_id=principal.actor_id
    )
    if not deleted:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Enrollment token not found"})
    return Response(status_code=204)
