from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import Control, Evidence
from postureledger.services.compliance.evaluator import Verdict


logger = logging.getLogger(__name__)


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(verdict: Verdict) -> str:
    return hashlib.sha256(canonical_json(verdict.result_payload()).encode("utf-8")).hexdigest()


async def evidence_exists(session: AsyncSession, *, control_id: str, digest: str) -> bool:
    result = await session.execute(
        select(Evidence.id).where(Evidence.control_id == control_id, Evidence.content_hash == digest)
    )
    return result.scalar_one_or_none() is not None


async def record_evidence(
    session: AsyncSession,
    *,
    control: Control,
    verdict: Verdict,
    organization_id: str,
    collected_by: str,
    source_description: str,
    commit: bool = True,
) -> bool:
    """Persist proof of a verdict for one control unless identical proof exists.

    Returns ``True`` only when a new row was written. A concurrent writer that
    lands the same (control, hash) first is an idempotent success.
    """
    digest = content_hash(verdict)
    if await evidence_exists(session, control_id=control.id, digest=digest):
        return False
    try:
        async with session.begin_nested():
            session.add(
                Evidence(
                    organization_id=organization_id,
                    control_id=control.id,
                    content_hash=digest,
                    automated=True,
                    source_description=source_description,
                    collected_by=collected_by,
                    file_name=f"{verdict.check_name}-{digest[:12]}.json",
                    check_name=verdict.check_name,
                    subject_id=verdict.subject_id,
                    payload_json=verdict.result_payload(),
                )
            )
    except IntegrityError:
        logger.info("evidence_insert_conflict control=%s hash=%s", control.id, digest[:12])
        return False
    if commit:
        await session.commit()
    logger.info("evidence_recorded control=%s check=%s hash=%s", control.iso_reference, verdict.check_name, digest[:12])
    return True


async def list_evidence(
    session: AsyncSession,
    organization_id: str,
    *,
    control_id: str | None = None,
    check_name: str | None = None,
    limit: int = 100,
) -> list[Evidence]:
    stmt = select(Evidence).where(Evidence.organization_id == organization_id)
    if control_id:
        stmt = stmt.where(Evidence.control_id == control_id)
    if check_name:
        stmt = stmt.where(Evidence.check_name == check_name)
    result = await session.execute(stmt.order_by(Evidence.collected_at.desc(), Evidence.id).limit(limit))
    return list(result.scalars().all())
