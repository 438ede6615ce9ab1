from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import Principal, get_current_principal, get_db
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.domain.models import Evidence
from postureledger.services.compliance.evidence import list_evidence


router = APIRouter(prefix="/evidence", tags=["evidence"], responses=DEFAULT_ERROR_RESPONSES)


class EvidenceResponse(BaseModel):
    id: str
    control_id: str
    content_hash: str
    automated: bool
    source_description: str
    collected_by: str
    file_name: str | None
    check_name: str | None
    subject_id: str | None
    payload: dict[str, Any] | None
    collected_at: str | None


def _evidence_response(row: Evidence) -> EvidenceResponse:
    return EvidenceResponse(
        id=row.id,
        control_id=row.control_id,
        content_hash=row.content_hash,
        automated=row.automated,
        source_description=row.source_description,
        collected_by=row.collected_by,
        file_name=row.file_name,
        check_name=row.check_name,
        subject_id=row.subject_id,
        payload=row.payload_json,
        collected_at=row.collected_at.isoformat() if row.collected_at else None,
    )


@router.get("", response_model=SuccessEnvelope[list[EvidenceResponse]] | list[EvidenceResponse])
async def list_organization_evidence(
    request: Request,
    control_id: str | None = Query(default=None),
    check_name: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_evidence(
        db,
        principal.organization_id,
        control_id=control_id,
        check_name=check_name,
        limit=limit,
    )
    return success_response(request=request, data=[_evidence_response(row) for row in rows])
