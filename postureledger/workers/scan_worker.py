from __future__ import annotations

import logging

from arq.connections import RedisSettings

from postureledger.core.config import get_settings
from postureledger.core.logging import configure_logging
from postureledger.services.background import get_background_tasks
from postureledger.services.scans import ScanJobPayload, process_scan_job, run_all_active_scans


logger = logging.getLogger(__name__)


async def run_compliance_job(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = ScanJobPayload.model_validate(payload)
    settings = get_settings()
    job_id = ctx.get("job_id") or job_payload.request_id
    attempt = ctx.get("job_try", 1)
    return await process_scan_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_retries=settings.scan_max_retries,
    )


async def run_scheduled_scans(ctx, kind: str = "repository_scan") -> dict:
    # Invoked by an external scheduler enqueuing this function by name.
    summaries = await run_all_active_scans(kind)  # type: ignore[arg-type]
    failed = [summary.organization_id for summary in summaries if summary.status == "failed"]
    logger.info("scheduled_scans_finished kind=%s runs=%s failed=%s", kind, len(summaries), len(failed))
    return {"runs": len(summaries), "failed": failed}


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("scan_worker_started queue=%s", get_settings().scan_queue_name)


async def _shutdown(ctx) -> None:
    # Audit writes spawned during jobs must land before the loop closes.
    await get_background_tasks().drain(timeout=10)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scan_queue_name
    max_tries = settings.scan_max_retries
    functions = [run_compliance_job, run_scheduled_scans]
    on_startup = _startup
    on_shutdown = _shutdown
