from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from postureledger.apps.api.deps import Principal, require_admin
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.core.config import get_settings
from postureledger.services.background import get_background_tasks
from postureledger.services.resilience import get_scan_bulkhead
from postureledger.services.scans import get_queue_depth
from postureledger.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class BackgroundFailureResponse(BaseModel):
    label: str
    error: str
    failed_at: str


class OpsMetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    external_latency: dict[str, dict[str, Any]]
    execution_mode: str
    queue_depth: int | None
    scan_capacity: int
    background_pending: int
    background_failures: list[BackgroundFailureResponse]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse] | OpsMetricsResponse)
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=10, le=86400),
    failures_limit: int = Query(default=20, ge=0, le=200),
    principal: Principal = Depends(require_admin()),
) -> dict:
    # Process-local view; each API replica reports its own numbers.
    _ = principal
    tasks = get_background_tasks()
    failures = list(tasks.failures)[-failures_limit:] if failures_limit else []
    payload = OpsMetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        external_latency=external_latency_by_integration(window_s),
        execution_mode=get_settings().scan_execution_mode,
        queue_depth=await get_queue_depth(),
        scan_capacity=get_scan_bulkhead().limit,
        background_pending=tasks.pending,
        background_failures=[
            BackgroundFailureResponse(
                label=failure.label,
                error=f"{type(failure.error).__name__}: {failure.error}",
                failed_at=failure.failed_at.isoformat(),
            )
            for failure in reversed(failures)
        ],
    )
    return success_response(request=request, data=payload)
