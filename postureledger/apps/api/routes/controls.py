from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import Principal, get_current_principal, get_db, require_admin
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.domain.models import Control
from postureledger.services.compliance.control_status import recompute_control_statuses
from postureledger.services.controls import list_controls, seed_controls


router = APIRouter(prefix="/controls", tags=["controls"], responses=DEFAULT_ERROR_RESPONSES)


class ControlResponse(BaseModel):
    id: str
    iso_reference: str
    title: str
    status: str


class ControlSeedResponse(BaseModel):
    created: int
    statuses: dict[str, str]


def _control_response(control: Control) -> ControlResponse:
    return ControlResponse(
        id=control.id,
        iso_reference=control.iso_reference,
        title=control.title,
        status=control.status,
    )


@router.get("", response_model=SuccessEnvelope[list[ControlResponse]] | list[ControlResponse])
async def list_organization_controls(
    request: Request,
    status: Literal["IMPLEMENTED", "PARTIALLY_IMPLEMENTED", "NOT_IMPLEMENTED"] | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    controls = await list_controls(db, principal.organization_id, status=status)
    return success_response(request=request, data=[_control_response(control) for control in controls])


@router.post("/seed", response_model=SuccessEnvelope[ControlSeedResponse] | ControlSeedResponse)
async def seed_organization_controls(
    request: Request,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    created = await seed_controls(db, principal.organization_id)
    # Fold in any verdicts already on record for the new controls.
    statuses = await recompute_control_statuses(db, principal.organization_id)
    return success_response(request=request, data=ControlSeedResponse(created=len(created), statuses=statuses))
