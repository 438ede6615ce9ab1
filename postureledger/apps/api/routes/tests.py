from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import Principal, get_current_principal, get_db, require_admin
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.domain.models import TrackedItem, TrackedItemHistory, TrackedItemRun
from postureledger.services.compliance.checks import CHECKS
from postureledger.services.controls import seed_controls
from postureledger.services.tracked_items import (
    complete_item,
    create_item,
    display_status,
    get_item,
    linked_control_ids,
    list_history,
    list_items,
    list_runs,
    seed_automated_items,
    seed_policy_items,
    summarize,
    update_item,
)


router = APIRouter(prefix="/tests", tags=["tests"], responses=DEFAULT_ERROR_RESPONSES)

Category = Literal["Custom", "Engineering", "HR", "IT", "Policy", "Risks"]
ItemType = Literal["Document", "Automated"]
StatusValue = Literal["Due_soon", "Needs_remediation", "OK", "Overdue"]


class TrackedItemResponse(BaseModel):
    id: str
    name: str
    description: str | None
    category: str
    item_type: str
    check_name: str | None
    owner_id: str | None
    status: str
    stored_status: str
    due_date: str
    completed_at: str | None
    last_run_result: str | None
    last_run_summary: str | None
    last_run_at: str | None
    control_ids: list[str] | None = None


class TrackedItemCreateRequest(BaseModel):
    model_config = {"extra": "forbid"}

    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: Category = "Custom"
    item_type: ItemType = "Document"
    check_name: str | None = None
    owner_id: str | None = None
    due_date: datetime
    control_ids: list[str] = Field(default_factory=list)


class TrackedItemPatchRequest(BaseModel):
    model_config = {"extra": "forbid"}

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: Category | None = None
    owner_id: str | None = None
    due_date: datetime | None = None
    status: StatusValue | None = None


class SummaryResponse(BaseModel):
    total: int
    completed: int
    pass_percentage: int
    overdue: int
    due_soon: int


class HistoryResponse(BaseModel):
    id: int
    changed_by: str | None
    change_type: str
    old_value: str | None
    new_value: str | None
    created_at: str | None


class RunResponse(BaseModel):
    id: int
    result: str
    summary: str
    findings: list[Any] | None
    executed_at: str


class SeedResponse(BaseModel):
    controls_created: int
    policy_items_created: int
    automated_items_created: int


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _item_response(item: TrackedItem, status: str, control_ids: list[str] | None = None) -> TrackedItemResponse:
    return TrackedItemResponse(
        id=item.id,
        name=item.name,
        description=item.description,
        category=item.category,
        item_type=item.item_type,
        check_name=item.check_name,
        owner_id=item.owner_id,
        status=status,
        stored_status=item.status,
        due_date=item.due_date.isoformat(),
        completed_at=_iso(item.completed_at),
        last_run_result=item.last_run_result,
        last_run_summary=item.last_run_summary,
        last_run_at=_iso(item.last_run_at),
        control_ids=control_ids,
    )


def _history_response(row: TrackedItemHistory) -> HistoryResponse:
    return HistoryResponse(
        id=row.id,
        changed_by=row.changed_by,
        change_type=row.change_type,
        old_value=row.old_value,
        new_value=row.new_value,
        created_at=_iso(row.created_at),
    )


def _run_response(row: TrackedItemRun) -> RunResponse:
    return RunResponse(
        id=row.id,
        result=row.result,
        summary=row.summary,
        findings=row.findings_json,
        executed_at=row.executed_at.isoformat(),
    )


@router.get("", response_model=SuccessEnvelope[list[TrackedItemResponse]] | list[TrackedItemResponse])
async def list_tracked_items(
    request: Request,
    category: Category | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    item_type: ItemType | None = Query(default=None),
    status: StatusValue | None = Query(default=None),
    search: str | None = Query(default=None, max_length=255),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_items(
        db,
        principal.organization_id,
        category=category,
        owner_id=owner_id,
        item_type=item_type,
        status=status,
        search=search,
    )
    payload = [_item_response(item, display) for item, display in rows]
    return success_response(request=request, data=payload)


@router.get("/summary", response_model=SuccessEnvelope[SummaryResponse] | SummaryResponse)
async def tracked_item_summary(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await summarize(db, principal.organization_id)
    payload = SummaryResponse(
        total=summary.total,
        completed=summary.completed,
        pass_percentage=summary.pass_percentage,
        overdue=summary.overdue,
        due_soon=summary.due_soon,
    )
    return success_response(request=request, data=payload)


@router.post("/seed", response_model=SuccessEnvelope[SeedResponse] | SeedResponse)
async def seed_tracked_items(
    request: Request,
    principal: Principal = Depends(require_admin()),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Controls first so automated items can link to them.
    controls = await seed_controls(db, principal.organization_id)
    policy = await seed_policy_items(db, principal.organization_id, actor_id=principal.actor_id)
    automated = await seed_automated_items(db, principal.organization_id, actor_id=principal.actor_id)
    payload = SeedResponse(
        controls_created=len(controls),
        policy_items_created=len(policy),
        automated_items_created=len(automated),
    )
    return success_response(request=request, data=payload)


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[TrackedItemResponse] | TrackedItemResponse,
)
async def create_tracked_item(
    request: Request,
    payload: TrackedItemCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.item_type == "Automated" and payload.check_name not in CHECKS:
        raise HTTPException(
            status_code=400,
            detail={"code": "UNKNOWN_CHECK", "message": "Automated items need a registered check_name"},
        )
    if payload.item_type == "Automated" and CHECKS[payload.check_name].scope != "ORGANIZATION":
        # Repository and device checks run per subject, never against the organization.
        raise HTTPException(
            status_code=422,
            detail={"code": "CHECK_SCOPE_UNSUPPORTED", "message": "Automated items need an organization-wide check"},
        )
    item = await create_item(
        db,
        organization_id=principal.organization_id,
        actor_id=principal.actor_id,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        item_type=payload.item_type,
        check_name=payload.check_name if payload.item_type == "Automated" else None,
        owner_id=payload.owner_id,
        due_date=payload.due_date,
        control_ids=payload.control_ids,
    )
    control_ids = await linked_control_ids(db, item.id)
    return success_response(request=request, data=_item_response(item, display_status(item), control_ids))


@router.get("/{item_id}", response_model=SuccessEnvelope[TrackedItemResponse] | TrackedItemResponse)
async def get_tracked_item(
    request: Request,
    item_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await get_item(db, principal.organization_id, item_id)
    control_ids = await linked_control_ids(db, item.id)
    return success_response(request=request, data=_item_response(item, display_status(item), control_ids))


@router.patch("/{item_id}", response_model=SuccessEnvelope[TrackedItemResponse] | TrackedItemResponse)
async def patch_tracked_item(
    request: Request,
    item_id: str,
    payload: TrackedItemPatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await update_item(
        db,
        organization_id=principal.organization_id,
        item_id=item_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        changes=payload.model_dump(exclude_none=True),
    )
    return success_response(request=request, data=_item_response(item, display_status(item)))


@router.post(
    "/{item_id}/complete",
    response_model=SuccessEnvelope[TrackedItemResponse] | TrackedItemResponse,
)
async def complete_tracked_item(
    request: Request,
    item_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    item = await complete_item(
        db,
        organization_id=principal.organization_id,
        item_id=item_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
    )
    return success_response(request=request, data=_item_response(item, display_status(item)))


@router.get(
    "/{item_id}/history",
    response_model=SuccessEnvelope[list[HistoryResponse]] | list[HistoryResponse],
)
async def tracked_item_history(
    request: Request,
    item_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_history(db, principal.organization_id, item_id)
    return success_response(request=request, data=[_history_response(row) for row in rows])


@router.get("/{item_id}/runs", response_model=SuccessEnvelope[list[RunResponse]] | list[RunResponse])
async def tracked_item_runs(
    request: Request,
    item_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_runs(db, principal.organization_id, item_id, limit=limit)
    return success_response(request=request, data=[_run_response(row) for row in rows])
