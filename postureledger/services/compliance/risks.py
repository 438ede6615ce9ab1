from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Literal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import Control, Risk, RiskTreatment
from postureledger.services.audit import record_event
from postureledger.services.compliance.checks import FAIL, PASS, CheckDefinition, risk_score
from postureledger.services.compliance.evaluator import SubjectRef, Verdict
from postureledger.services.resilience import KeyedLocks


logger = logging.getLogger(__name__)

RiskTransition = Literal["CREATED", "REOPENED", "MITIGATED", "REFRESHED", "UNCHANGED"]

_risk_locks = KeyedLocks()


async def _find_risk(session: AsyncSession, *, subject_id: str, title: str) -> Risk | None:
    result = await session.execute(select(Risk).where(Risk.subject_id == subject_id, Risk.title == title))
    return result.scalar_one_or_none()


async def _link_treatments(session: AsyncSession, risk: Risk, controls: Iterable[Control]) -> None:
    result = await session.execute(select(RiskTreatment.control_id).where(RiskTreatment.risk_id == risk.id))
    linked = set(result.scalars().all())
    for control in controls:
        if control.id not in linked:
            session.add(RiskTreatment(risk_id=risk.id, control_id=control.id))
            linked.add(control.id)


def _refresh_weights(risk: Risk, definition: CheckDefinition) -> bool:
    # Impact, likelihood and score are owned by the engine; narrative fields are not.
    changed = (
        risk.impact != definition.impact
        or risk.likelihood != definition.likelihood
        or risk.score != definition.score
    )
    risk.impact = definition.impact
    risk.likelihood = definition.likelihood
    risk.score = definition.score
    return changed


async def _create_risk(
    session: AsyncSession,
    *,
    organization_id: str,
    subject: SubjectRef,
    definition: CheckDefinition,
    title: str,
    now: datetime,
) -> Risk | None:
    risk = Risk(
        organization_id=organization_id,
        subject_id=subject.id,
        check_name=definition.name,
        title=title,
        description=definition.render_risk_description(subject.name),
        impact=definition.impact,
        likelihood=definition.likelihood,
        score=definition.score,
        status="OPEN",
        opened_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(risk)
    except IntegrityError:
        # Another process created it first.
        return None
    return risk


async def reconcile_risk(
    session: AsyncSession,
    *,
    organization_id: str,
    subject: SubjectRef,
    definition: CheckDefinition,
    verdict: Verdict,
    controls: Iterable[Control] = (),
    now: datetime,
    actor_id: str | None = None,
) -> RiskTransition:
    """Apply one verdict to the risk for (subject, check) and commit."""
    if verdict.result not in (PASS, FAIL):
        return "UNCHANGED"
    title = definition.render_risk_title(subject.name)
    controls = list(controls)

    async with _risk_locks.hold((subject.id, definition.name)):
        risk = await _find_risk(session, subject_id=subject.id, title=title)
        transition: RiskTransition = "UNCHANGED"

        if risk is None and verdict.result == FAIL:
            risk = await _create_risk(
                session,
                organization_id=organization_id,
                subject=subject,
                definition=definition,
                title=title,
                now=now,
            )
            if risk is None:
                risk = await _find_risk(session, subject_id=subject.id, title=title)
            else:
                transition = "CREATED"

        if risk is not None and transition == "UNCHANGED":
            if verdict.result == FAIL and risk.status == "MITIGATED":
                risk.status = "OPEN"
                risk.opened_at = now
                risk.mitigated_at = None
                _refresh_weights(risk, definition)
                transition = "REOPENED"
            elif verdict.result == FAIL:
                if _refresh_weights(risk, definition):
                    transition = "REFRESHED"
            elif risk.status == "OPEN":
                risk.status = "MITIGATED"
                risk.mitigated_at = now
                transition = "MITIGATED"

        if risk is None:
            return transition
        if verdict.result == FAIL:
            await session.flush()
            await _link_treatments(session, risk, controls)
        if transition != "UNCHANGED":
            await record_event(
                session=session,
                organization_id=organization_id,
                actor_type="system" if actor_id is None else "user",
                actor_id=actor_id,
                event_type=f"risk.{transition.lower()}",
                resource_type="risk",
                resource_id=risk.id,
                metadata={"check": definition.name, "subject": subject.name, "score": risk.score},
            )
            logger.info(
                "risk_%s subject=%s check=%s score=%s",
                transition.lower(),
                subject.id,
                definition.name,
                risk.score,
            )
        await session.commit()
        return transition


async def mitigate_subject_risks(
    session: AsyncSession,
    *,
    organization_id: str,
    subject_ids: Iterable[str],
    now: datetime,
    reason: str,
    actor_id: str | None = None,
) -> int:
    """Mitigate every OPEN risk of subjects that left the organization's scope.

    The rows are kept, so a subject that comes back reopens the same risk.
    Does not commit.
    """
    subject_ids = list(subject_ids)
    if not subject_ids:
        return 0
    result = await session.execute(
        select(Risk).where(
            Risk.organization_id == organization_id,
            Risk.subject_id.in_(subject_ids),
            Risk.status == "OPEN",
        )
    )
    risks = list(result.scalars().all())
    for risk in risks:
        risk.status = "MITIGATED"
        risk.mitigated_at = now
        await record_event(
            session=session,
            organization_id=organization_id,
            actor_type="system" if actor_id is None else "user",
            actor_id=actor_id,
            event_type="risk.mitigated",
            resource_type="risk",
            resource_id=risk.id,
            metadata={"check": risk.check_name, "reason": reason},
        )
    if risks:
        logger.info("risks_mitigated_for_removed_subjects org=%s count=%s reason=%s", organization_id, len(risks), reason)
    return len(risks)


async def list_risks(
    session: AsyncSession,
    organization_id: str,
    *,
    status: str | None = None,
    subject_id: str | None = None,
    check_name: str | None = None,
) -> list[Risk]:
    stmt = select(Risk).where(Risk.organization_id == organization_id)
    if status:
        stmt = stmt.where(Risk.status == status)
    if subject_id:
        stmt = stmt.where(Risk.subject_id == subject_id)
    if check_name:
        stmt = stmt.where(Risk.check_name == check_name)
    result = await session.execute(stmt.order_by(Risk.score.desc(), Risk.title))
    return list(result.scalars().all())


async def update_risk(
    session: AsyncSession,
    *,
    organization_id: str,
    risk_id: str,
    actor_id: str | None,
    changes: dict[str, str],
) -> Risk | None:
    """Apply a human edit. Status stays engine-owned; the next Fail may reset the weights."""
    result = await session.execute(
        select(Risk).where(Risk.id == risk_id, Risk.organization_id == organization_id)
    )
    risk = result.scalar_one_or_none()
    if risk is None:
        return None
    for field_name in ("description", "treatment_notes", "impact", "likelihood"):
        if field_name in changes:
            setattr(risk, field_name, changes[field_name])
    risk.score = risk_score(risk.impact, risk.likelihood)
    await record_event(
        session=session,
        organization_id=organization_id,
        actor_type="user",
        actor_id=actor_id,
        event_type="risk.updated",
        resource_type="risk",
        resource_id=risk.id,
        metadata={"fields": sorted(changes), "score": risk.score},
    )
    await session.commit()
    return risk


def lock_count() -> int:
    return len(_risk_locks)
