from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import Principal, get_current_principal, get_db, require_admin
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.domain.models import Risk
from postureledger.services.compliance.risks import list_risks, update_risk


router = APIRouter(prefix="/risks", tags=["risks"], responses=DEFAULT_ERROR_RESPONSES)

LevelValue = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]


class RiskResponse(BaseModel):
    id: str
    subject_id: str
    check_name: str
    title: str
    description: str
    treatment_notes: str | None
    impact: str
    likelihood: str
    score: int
    status: str
    opened_at: str | None
    mitigated_at: str | None


class RiskPatchRequest(BaseModel):
    model_config = {"extra": "forbid"}

    description: str | None = Field(default=None, min_length=1)
    treatment_notes: str | None = None
    impact: LevelValue | None = None
    likelihood: LevelValue | None = None


def _risk_response(risk: Risk) -> RiskResponse:
    return RiskResponse(
        id=risk.id,
        subject_id=risk.subject_id,
        check_name=risk.check_name,
        title=risk.title,
        description=risk.description,
        treatment_notes=risk.treatment_notes,
        impact=risk.impact,
        likelihood=risk.likelihood,
        score=risk.score,
        status=risk.status,
        opened_at=risk.opened_at.isoformat() if risk.opened_at else None,
        mitigated_at=risk.mitigated_at.isoformat() if risk.mitigated_at else None,
    )


@router.get("", response_model=SuccessEnvelope[list[RiskResponse]] | list[RiskResponse])
async def list_organization_risks(
    request: Request,
    status: Literal["OPEN", "MITIGATED"] | None = Query(default=None),
    subject_id: str | None = Query(default=None),
    check_name: str | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    risks = await list_risks(
        db,
        principal.organization_id,
        status=status,
        subject_id=subject_id,
        check_name=check_name,
    )
    return success_response(request=request, data=[_risk_response(risk) for risk in risks])


@router.patch("/{risk_id}", response_model=SuccessEnvelope[RiskResponse] | RiskResponse)
async def patch_risk(
    request: Request,
    risk_id: str,
    payload: RiskPatchRequest,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Status is engine-owned and not editable here.
    changes = payload.model_dump(exclude_none=True)
    risk = await update_risk(
        db,
        organization_id=principal.organization_id,
        risk_id=risk_id,
        actor_id=principal.actor_id,
        changes=changes,
    )
    if risk is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Risk not found"})
    return success_response(request=request, data=_risk_response(risk))
