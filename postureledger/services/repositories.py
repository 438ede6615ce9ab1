from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import CheckResult, Risk, Subject
from postureledger.services.compliance.control_status import REMOVED


@dataclass(frozen=True)
class RepositoryReport:
    subject: Subject
    results: list[CheckResult]
    open_risks: int


async def list_repositories(
    session: AsyncSession, organization_id: str, *, include_removed: bool = False
) -> list[Subject]:
    stmt = select(Subject).where(Subject.organization_id == organization_id, Subject.kind == "REPO")
    if not include_removed:
        stmt = stmt.where(Subject.status != REMOVED)
    result = await session.execute(stmt.order_by(Subject.name))
    return list(result.scalars().all())


async def get_repository_report(
    session: AsyncSession, organization_id: str, repository_id: str
) -> RepositoryReport | None:
    """Latest per-check results for one scanned repository."""
    result = await session.execute(
        select(Subject).where(
            Subject.id == repository_id,
            Subject.organization_id == organization_id,
            Subject.kind == "REPO",
        )
    )
    subject = result.scalar_one_or_none()
    if subject is None:
        return None
    results = await session.execute(
        select(CheckResult).where(CheckResult.subject_id == subject.id).order_by(CheckResult.check_name)
    )
    open_risks = await session.execute(
        select(func.count(Risk.id)).where(Risk.subject_id == subject.id, Risk.status == "OPEN")
    )
    return RepositoryReport(subject=subject, results=list(results.scalars().all()), open_risks=open_risks.scalar_one())
