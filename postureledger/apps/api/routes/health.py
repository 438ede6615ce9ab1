from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.apps.api.deps import get_db
from postureledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from postureledger.apps.api.response import SuccessEnvelope, success_response
from postureledger.services.telemetry import gauges_snapshot


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_BREAKER_GAUGE_PREFIX = "circuit_breaker_state."
_BREAKER_PHASES = {0.0: "closed", 0.5: "half_open", 1.0: "open"}


class HealthResponse(BaseModel):
    status: str
    database: str
    open_breakers: list[str]


async def _database_reachable(db: AsyncSession) -> bool:
    try:
        await db.execute(select(1))
        return True
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        return False


def _open_breakers() -> list[str]:
    # Only breakers this process has exercised report a phase.
    return sorted(
        name[len(_BREAKER_GAUGE_PREFIX):]
        for name, value in gauges_snapshot().items()
        if name.startswith(_BREAKER_GAUGE_PREFIX) and _BREAKER_PHASES.get(value) != "closed"
    )


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict | JSONResponse:
    """Readiness: 503 when the database is unreachable.

    An open source-hosting breaker degrades the answer without failing it,
    since device check-ins and reads still work.
    """
    database_ok = await _database_reachable(db)
    open_breakers = _open_breakers()
    if not database_ok:
        status = "unavailable"
    elif open_breakers:
        status = "degraded"
    else:
        status = "ok"
    payload = HealthResponse(status=status, database="ok" if database_ok else "unreachable", open_breakers=open_breakers)
    body = success_response(request=request, data=payload)
    if not database_ok:
        return JSONResponse(content=jsonable_encoder(body), status_code=503)
    return body
