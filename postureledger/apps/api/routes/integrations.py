from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import Principal, get_current_principal, get_db, require_admin
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, get_request_id, success_response
from postureledger.domain.models import Subject
from postureledger.services.audit import record_event
from postureledger.services.repositories import get_repository_report, list_repositories
from postureledger.services.scans import ScanJobPayload, ScanKind, dispatch_scan, get_active_integration


router = APIRouter(prefix="/integrations/github", tags=["integrations"], responses=DEFAULT_ERROR_RESPONSES)


class RunTestsRequest(BaseModel):
    model_config = {"extra": "forbid"}

    item_ids: list[str] | None = Field(default=None, max_length=500)


class ScanAcceptedResponse(BaseModel):
    job_id: str
    kind: str
    status: str


async def _accept(
    request: Request,
    db: AsyncSession,
    principal: Principal,
    kind: ScanKind,
    item_ids: list[str] | None = None,
) -> dict:
    # Fail fast with 409 rather than letting the background run discover it.
    await get_active_integration(db, principal.organization_id)
    request_id = get_request_id(request)
    # The request id doubles as the job id; commit before the run opens its own session.
    await record_event(
        session=db,
        organization_id=principal.organization_id,
        actor_type="user",
        actor_id=principal.actor_id,
        event_type=f"{kind}.requested",
        resource_type="integration",
        request_id=request_id,
        metadata={"job_id": request_id, "item_ids": item_ids},
        commit=True,
    )
    job_id = await dispatch_scan(
        ScanJobPayload(
            organization_id=principal.organization_id,
            kind=kind,
            actor_id=principal.actor_id,
            request_id=request_id,
            item_ids=item_ids,
        )
    )
    data = ScanAcceptedResponse(job_id=job_id, kind=kind, status="accepted")
    return success_response(request=request, data=data)


@router.post(
    "/scan",
    status_code=202,
    response_model=SuccessEnvelope[ScanAcceptedResponse] | ScanAcceptedResponse,
)
async def trigger_repository_scan(
    request: Request,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await _accept(request, db, principal, "repository_scan")


@router.post(
    "/tests/run",
    status_code=202,
    response_model=SuccessEnvelope[ScanAcceptedResponse] | ScanAcceptedResponse,
)
async def run_automated_tests(
    request: Request,
    payload: RunTestsRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item_ids = payload.item_ids if payload else None
    return await _accept(request, db, principal, "automated_tests", item_ids)


class RepositoryResponse(BaseModel):
    id: str
    name: str
    external_id: str | None
    criticality: str
    status: str
    metadata: dict[str, Any] | None


class RepositoryCheckResponse(BaseModel):
    check_name: str
    result: str
    summary: str
    findings: list[Any] | None
    evaluated_at: str


class RepositoryReportResponse(RepositoryResponse):
    open_risks: int
    checks: list[RepositoryCheckResponse]


def _repository(subject: Subject) -> dict[str, Any]:
    return {
        "id": subject.id,
        "name": subject.name,
        "external_id": subject.external_id,
        "criticality": subject.criticality,
        "status": subject.status,
        "metadata": subject.metadata_json,
    }


@router.get("/repos", response_model=SuccessEnvelope[list[RepositoryResponse]] | list[RepositoryResponse])
async def repositories(
    request: Request,
    include_removed: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_repositories(db, principal.organization_id, include_removed=include_removed)
    return success_response(request=request, data=[RepositoryResponse(**_repository(row)) for row in rows])


@router.get(
    "/repos/{repository_id}/scan",
    response_model=SuccessEnvelope[RepositoryReportResponse] | RepositoryReportResponse,
)
async def repository_scan_report(
    request: Request,
    repository_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await get_repository_report(db, principal.organization_id, repository_id)
    if report is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Repository not found"})
    data = RepositoryReportResponse(
        **_repository(report.subject),
        open_risks=report.open_risks,
        checks=[
            RepositoryCheckResponse(
                check_name=row.check_name,
                result=row.result,
                summary=row.summary,
                findings=row.findings_json,
                evaluated_at=row.evaluated_at.isoformat(),
            )
            for row in report.results
        ],
    )
    return success_response(request=request, data=data)
