from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.core.config import get_settings
from postureledger.core.errors import (
    IntegrationNotConnectedError,
    IntegrationUnavailableError,
    RunFailedError,
    ServiceBusyError,
)
from postureledger.domain.models import Integration
from postureledger.persistence.db import SessionLocal
from postureledger.providers.source_hosting.github import GitHubClient
from postureledger.services.background import get_background_tasks
from postureledger.services.compliance.engine import RunSummary, run_automated_tests, run_repository_scan
from postureledger.services.resilience import get_scan_bulkhead


logger = logging.getLogger(__name__)

ScanKind = Literal["repository_scan", "automated_tests"]

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class ScanJobPayload(BaseModel):
    # Shared between the API, the arq worker and the CLI.
    organization_id: str
    kind: ScanKind = "repository_scan"
    actor_id: str | None = None
    request_id: str | None = None
    item_ids: list[str] | None = None


def _queue_key(queue_name: str) -> str:
    return f"arq:queue:{queue_name}"


async def get_redis_pool():
    # Cache the arq pool per event loop.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.scan_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    settings = get_settings()
    if settings.scan_execution_mode.lower() != "queue":
        return get_background_tasks().pending
    try:
        redis = await get_redis_pool()
        return int(await redis.llen(_queue_key(settings.scan_queue_name)))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


def build_source_client(integration: Integration) -> GitHubClient:
    return GitHubClient(integration.access_token)


async def get_active_integration(session: AsyncSession, organization_id: str) -> Integration:
    result = await session.execute(
        select(Integration).where(
            Integration.organization_id == organization_id,
            Integration.provider == "GITHUB",
            Integration.status == "ACTIVE",
        )
    )
    integration = result.scalar_one_or_none()
    if integration is None:
        raise IntegrationNotConnectedError(f"No active GitHub integration for organization {organization_id}")
    return integration


async def execute_scan(payload: ScanJobPayload) -> RunSummary:
    """Run one scan in its own session, bounded by the process-wide scan bulkhead."""
    lease = await get_scan_bulkhead().acquire()
    if lease is None:
        raise ServiceBusyError("Scan capacity is saturated")
    try:
        async with SessionLocal() as session:
            integration = await get_active_integration(session, payload.organization_id)
            async with build_source_client(integration) as client:
                if payload.kind == "automated_tests":
                    summary = await run_automated_tests(
                        session,
                        organization_id=payload.organization_id,
                        client=client,
                        actor_id=payload.actor_id,
                        item_ids=payload.item_ids,
                    )
                else:
                    summary = await run_repository_scan(
                        session,
                        organization_id=payload.organization_id,
                        client=client,
                        actor_id=payload.actor_id,
                    )
            if summary.status == "succeeded":
                integration.last_synced_at = datetime.now(timezone.utc)
                await session.commit()
            return summary
    finally:
        lease.release()


def _is_retryable(exc: Exception) -> bool:
    # Saturation and open breakers clear on their own; a missing integration does not.
    return isinstance(exc, (ServiceBusyError, IntegrationUnavailableError))


async def process_scan_job(
    payload: ScanJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_retries: int,
) -> dict[str, Any]:
    """Worker entry point: run the scan and report its summary to arq."""
    try:
        summary = await execute_scan(payload)
    except Exception as exc:  # noqa: BLE001 - classify then re-raise or report
        if _is_retryable(exc) and attempt < max_retries:
            logger.warning("scan_job_retry job=%s attempt=%s reason=%s", job_id, attempt, exc)
            raise Retry(defer=attempt * 5) from exc
        logger.exception("scan_job_failed job=%s org=%s", job_id, payload.organization_id)
        return {"job_id": job_id, "status": "failed", "errors": [str(exc)]}
    logger.info("scan_job_finished job=%s status=%s", job_id, summary.status)
    return {"job_id": job_id, **summary.as_dict()}


async def _execute_in_background(payload: ScanJobPayload) -> RunSummary:
    summary = await execute_scan(payload)
    if summary.status == "failed":
        # Surfaces on the background error channel.
        raise RunFailedError("; ".join(summary.errors) or "run failed", run_id=summary.run_id)
    return summary


async def dispatch_scan(payload: ScanJobPayload) -> str:
    """Hand a scan to the configured executor and return its job id."""
    settings = get_settings()
    job_id = payload.request_id or uuid4().hex
    if settings.scan_execution_mode.lower() != "queue":
        get_background_tasks().spawn(
            _execute_in_background(payload),
            label=f"scan:{payload.kind}:{payload.organization_id}",
        )
        logger.info("scan_dispatched mode=background job=%s org=%s", job_id, payload.organization_id)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "run_compliance_job",
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.scan_queue_name,
    )
    logger.info("scan_dispatched mode=queue job=%s org=%s", job_id, payload.organization_id)
    # arq returns None when the job id is already queued.
    return job.job_id if job else job_id


async def active_organization_ids() -> list[str]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(Integration.organization_id)
            .where(Integration.provider == "GITHUB", Integration.status == "ACTIVE")
            .order_by(Integration.organization_id)
        )
        return list(result.scalars().all())


async def run_all_active_scans(kind: ScanKind = "repository_scan") -> list[RunSummary]:
    """Scan every organization with an active integration, one after another."""
    summaries: list[RunSummary] = []
    for organization_id in await active_organization_ids():
        try:
            summaries.append(await execute_scan(ScanJobPayload(organization_id=organization_id, kind=kind)))
        except (IntegrationNotConnectedError, ServiceBusyError) as exc:
            logger.warning("scheduled_scan_skipped org=%s reason=%s", organization_id, exc)
    return summaries
