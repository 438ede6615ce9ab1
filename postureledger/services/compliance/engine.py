from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.core.config import get_settings
from postureledger.core.errors import (
    IntegrationUnavailableError,
    SourceAuthError,
    SourceUnavailableError,
)
from postureledger.domain.models import (
    CheckResult,
    Control,
    Subject,
    TrackedItem,
    TrackedItemHistory,
    TrackedItemRun,
    User,
    UserGitAccount,
)
from postureledger.providers.source_hosting.base import SourceHostingClient
from postureledger.services.audit import record_event
from postureledger.services.compliance.checks import PASS, WARNING, checks_for_scope, get_check
from postureledger.services.compliance.control_status import REMOVED, recompute_control_statuses, reference_tokens
from postureledger.services.compliance.data_source import CachedDataSource, RunCache
from postureledger.services.compliance.device_posture import DevicePosture
from postureledger.services.compliance.evaluator import (
    EvaluationContext,
    RuleEvaluator,
    SubjectRef,
    Verdict,
)
from postureledger.services.compliance.evidence import content_hash, record_evidence
from postureledger.services.compliance.repo_scan import (
    ORGANIZATION_SUBJECT_NAME,
    derive_criticality,
    describe_repo,
    repo_metadata,
)
from postureledger.services.compliance.risks import mitigate_subject_risks, reconcile_risk
from postureledger.services.compliance.task_status import OK, status_from_verdict
from postureledger.services.ownership import resolve_owner


logger = logging.getLogger(__name__)

_SOURCE_COLLECTOR = "GitHub Integration"
_DEVICE_COLLECTOR = "Device Agent"


@dataclass
class RunSummary:
    organization_id: str
    kind: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    status: str = "succeeded"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    verdicts: dict[str, int] = field(default_factory=dict)
    evidence_created: int = 0
    risk_transitions: dict[str, int] = field(default_factory=dict)
    control_statuses: dict[str, str] = field(default_factory=dict)
    subjects_removed: int = 0
    errors: list[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.status = "failed"
        self.errors.append(message)

    def finish(self) -> RunSummary:
        self.finished_at = datetime.now(timezone.utc)
        return self

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload


@dataclass
class _Tally:
    verdicts: Counter = field(default_factory=Counter)
    transitions: Counter = field(default_factory=Counter)
    evidence_created: int = 0

    def apply(self, summary: RunSummary) -> None:
        summary.verdicts = dict(self.verdicts)
        summary.risk_transitions = {k: v for k, v in self.transitions.items() if k != "UNCHANGED"}
        summary.evidence_created = self.evidence_created


def _subject_ref(subject: Subject) -> SubjectRef:
    return SubjectRef(id=subject.id, kind=subject.kind, name=subject.name)


async def upsert_subject(
    session: AsyncSession,
    *,
    organization_id: str,
    kind: str,
    name: str,
    **fields: Any,
) -> Subject:
    """Create or refresh a subject by its natural key and commit."""
    stmt = select(Subject).where(
        Subject.organization_id == organization_id, Subject.kind == kind, Subject.name == name
    )
    subject = (await session.execute(stmt)).scalar_one_or_none()
    if subject is None:
        try:
            async with session.begin_nested():
                subject = Subject(organization_id=organization_id, kind=kind, name=name, **fields)
                session.add(subject)
        except IntegrityError:
            subject = (await session.execute(stmt)).scalar_one()
        else:
            await session.commit()
            return subject
    for key, value in fields.items():
        # Never clear an owner chosen earlier.
        if key == "owner_id" and value is None:
            continue
        setattr(subject, key, value)
    await session.commit()
    return subject


async def _controls_by_ref(session: AsyncSession, organization_id: str) -> dict[str, list[Control]]:
    result = await session.execute(select(Control).where(Control.organization_id == organization_id))
    mapping: dict[str, list[Control]] = defaultdict(list)
    for control in result.scalars().all():
        for ref in reference_tokens(control.iso_reference):
            mapping[ref].append(control)
    return mapping


async def upsert_check_result(session: AsyncSession, *, organization_id: str, verdict: Verdict) -> None:
    stmt = select(CheckResult).where(
        CheckResult.subject_id == verdict.subject_id, CheckResult.check_name == verdict.check_name
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        try:
            async with session.begin_nested():
                row = CheckResult(
                    organization_id=organization_id,
                    subject_id=verdict.subject_id,
                    check_name=verdict.check_name,
                )
                _fill_check_result(row, verdict)
                session.add(row)
        except IntegrityError:
            row = (await session.execute(stmt)).scalar_one()
            _fill_check_result(row, verdict)
    else:
        _fill_check_result(row, verdict)
    await session.commit()


def _fill_check_result(row: CheckResult, verdict: Verdict) -> None:
    row.result = verdict.result
    row.summary = verdict.summary
    row.findings_json = verdict.findings
    row.content_hash = content_hash(verdict)
    row.evaluated_at = verdict.evaluated_at


async def _persist_verdict(
    session: AsyncSession,
    *,
    organization_id: str,
    subject: SubjectRef,
    verdict: Verdict,
    controls_by_ref: dict[str, list[Control]],
    tally: _Tally,
    collected_by: str,
    now: datetime,
    actor_id: str | None,
) -> None:
    # Evidence, then risk, then the latest result the aggregator reads.
    tally.verdicts[verdict.result] += 1
    definition = get_check(verdict.check_name)
    if definition is None:
        return
    controls: list[Control] = []
    for ref in definition.iso_refs:
        for control in controls_by_ref.get(ref, []):
            if control not in controls:
                controls.append(control)
    for control in controls:
        created = await record_evidence(
            session,
            control=control,
            verdict=verdict,
            organization_id=organization_id,
            collected_by=collected_by,
            source_description=f"Automated check: {definition.title} ({subject.name})",
        )
        if created:
            tally.evidence_created += 1
    transition = await reconcile_risk(
        session,
        organization_id=organization_id,
        subject=subject,
        definition=definition,
        verdict=verdict,
        controls=controls,
        now=now,
        actor_id=actor_id,
    )
    tally.transitions[transition] += 1
    await upsert_check_result(session, organization_id=organization_id, verdict=verdict)


async def _persist_all(
    session: AsyncSession,
    *,
    summary: RunSummary,
    pairs: Iterable[tuple[SubjectRef, Verdict]],
    tally: _Tally,
    collected_by: str,
    now: datetime,
    actor_id: str | None,
) -> list[Verdict]:
    controls_by_ref = await _controls_by_ref(session, summary.organization_id)
    persisted: list[Verdict] = []
    for subject, verdict in pairs:
        try:
            await _persist_verdict(
                session,
                organization_id=summary.organization_id,
                subject=subject,
                verdict=verdict,
                controls_by_ref=controls_by_ref,
                tally=tally,
                collected_by=collected_by,
                now=now,
                actor_id=actor_id,
            )
        except SQLAlchemyError as exc:
            # Rows committed for earlier verdicts stay; this one is reported.
            await session.rollback()
            logger.error(
                "verdict_persist_failed run=%s subject=%s check=%s",
                summary.run_id,
                subject.id,
                verdict.check_name,
                exc_info=exc,
            )
            summary.errors.append(f"{verdict.check_name}@{subject.name}: {exc.__class__.__name__}")
            # Rollback expired the loaded controls.
            controls_by_ref = await _controls_by_ref(session, summary.organization_id)
            continue
        persisted.append(verdict)
    return persisted


def _build_source(client: SourceHostingClient, now: datetime) -> tuple[CachedDataSource, RunCache]:
    settings = get_settings()
    cache = RunCache()
    source = CachedDataSource(
        client=client,
        cache=cache,
        now=now,
        review_window_days=settings.review_window_days,
        commit_sample_size=settings.commit_sample_size,
        max_concurrency=settings.source_max_concurrency,
    )
    return source, cache


async def _ensure_organization_subject(
    session: AsyncSession, *, organization_id: str, owner_id: str | None
) -> Subject:
    return await upsert_subject(
        session,
        organization_id=organization_id,
        kind="ORGANIZATION",
        name=ORGANIZATION_SUBJECT_NAME,
        criticality="HIGH",
        description="GitHub SaaS platform hosting all source code repositories",
        owner_id=owner_id,
    )


async def _finish(
    session: AsyncSession,
    summary: RunSummary,
    *,
    actor_id: str | None,
) -> RunSummary:
    summary.finish()
    await record_event(
        session=session,
        organization_id=summary.organization_id,
        actor_type="system" if actor_id is None else "user",
        actor_id=actor_id,
        event_type=f"compliance.{summary.kind}.{summary.status}",
        outcome="success" if summary.status == "succeeded" else "failure",
        resource_type="run",
        resource_id=summary.run_id,
        metadata={
            "verdicts": summary.verdicts,
            "evidence_created": summary.evidence_created,
            "risk_transitions": summary.risk_transitions,
            "subjects_removed": summary.subjects_removed,
            "errors": summary.errors[:20],
        },
        commit=True,
    )
    logger.info(
        "compliance_run_finished run=%s kind=%s org=%s status=%s verdicts=%s evidence=%s",
        summary.run_id,
        summary.kind,
        summary.organization_id,
        summary.status,
        summary.verdicts,
        summary.evidence_created,
    )
    return summary


async def retire_missing_repositories(
    session: AsyncSession,
    *,
    organization_id: str,
    seen: set[str],
    now: datetime,
    actor_id: str | None = None,
) -> tuple[int, int]:
    """Mark repositories absent from the latest listing as REMOVED and mitigate their risks.

    Returns the number of subjects removed and risks mitigated. A repository
    that reappears is set back to ACTIVE by ``upsert_subject``.
    """
    result = await session.execute(
        select(Subject).where(
            Subject.organization_id == organization_id,
            Subject.kind == "REPO",
            Subject.status != REMOVED,
        )
    )
    missing = [subject for subject in result.scalars().all() if subject.name not in seen]
    if not missing:
        return 0, 0
    for subject in missing:
        subject.status = REMOVED
    mitigated = await mitigate_subject_risks(
        session,
        organization_id=organization_id,
        subject_ids=[subject.id for subject in missing],
        now=now,
        reason="repository_removed",
        actor_id=actor_id,
    )
    await session.commit()
    logger.info(
        "repositories_removed org=%s count=%s risks_mitigated=%s", organization_id, len(missing), mitigated
    )
    return len(missing), mitigated


async def run_repository_scan(
    session: AsyncSession,
    *,
    organization_id: str,
    client: SourceHostingClient,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> RunSummary:
    """Scan every repository the integration can see and reconcile the results."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    summary = RunSummary(organization_id=organization_id, kind="repository_scan")
    if not settings.compliance_enabled:
        summary.status = "skipped"
        return summary.finish()

    source, cache = _build_source(client, now)
    try:
        try:
            repos = await source.repos()
        except (SourceAuthError, SourceUnavailableError, IntegrationUnavailableError) as exc:
            logger.warning("repository_scan_aborted run=%s org=%s", summary.run_id, organization_id, exc_info=exc)
            summary.fail(str(exc))
            return await _finish(session, summary, actor_id=actor_id)

        owner_id = await resolve_owner(session, organization_id, actor_id)
        org_subject = await _ensure_organization_subject(
            session, organization_id=organization_id, owner_id=owner_id
        )
        contexts: list[EvaluationContext] = []
        names: list[str] = []
        for repo in repos:
            subject = await upsert_subject(
                session,
                organization_id=organization_id,
                kind="REPO",
                name=repo["full_name"],
                external_id=str(repo.get("id")) if repo.get("id") is not None else None,
                criticality=derive_criticality(repo),
                description=describe_repo(repo),
                metadata_json=repo_metadata(repo),
                owner_id=owner_id,
                parent_id=org_subject.id,
                status="ARCHIVED" if repo.get("archived") else "ACTIVE",
            )
            for definition in checks_for_scope("REPO"):
                names.append(definition.name)
                contexts.append(
                    EvaluationContext(
                        organization_id=organization_id,
                        subject=_subject_ref(subject),
                        now=now,
                        source=source,
                        repo=repo,
                    )
                )

        evaluator = RuleEvaluator()
        verdicts = await asyncio.gather(
            *(evaluator.evaluate(name, ctx) for name, ctx in zip(names, contexts))
        )
        tally = _Tally()
        await _persist_all(
            session,
            summary=summary,
            pairs=[(ctx.subject, verdict) for ctx, verdict in zip(contexts, verdicts)],
            tally=tally,
            collected_by=_SOURCE_COLLECTOR,
            now=now,
            actor_id=actor_id,
        )
        if repos:
            summary.subjects_removed, mitigated = await retire_missing_repositories(
                session,
                organization_id=organization_id,
                seen={repo["full_name"] for repo in repos},
                now=now,
                actor_id=actor_id,
            )
            tally.transitions["MITIGATED"] += mitigated
        else:
            # An empty listing is indistinguishable from lost access; keep what is known.
            logger.warning("repository_scan_empty run=%s org=%s", summary.run_id, organization_id)
        tally.apply(summary)
        summary.control_statuses = await recompute_control_statuses(session, organization_id)
        return await _finish(session, summary, actor_id=actor_id)
    finally:
        await cache.close()


async def _identity_logins(session: AsyncSession, organization_id: str) -> tuple[frozenset[str], frozenset[str]]:
    result = await session.execute(
        select(func.lower(UserGitAccount.login), User.is_active)
        .join(User, User.id == UserGitAccount.user_id)
        .where(User.organization_id == organization_id)
    )
    linked: set[str] = set()
    active: set[str] = set()
    for login, is_active in result.all():
        linked.add(login)
        if is_active:
            active.add(login)
    return frozenset(linked), frozenset(active)


def _runs_per_organization(check_name: str | None) -> bool:
    definition = get_check(check_name or "")
    return definition is None or definition.scope == "ORGANIZATION"


def _out_of_scope_verdict(item: TrackedItem, now: datetime) -> Verdict:
    definition = get_check(item.check_name or "")
    scope = definition.scope.lower() if definition else "subject"
    return Verdict(
        check_name=item.check_name or "",
        subject_id="",
        result=WARNING,
        summary=f"{item.check_name} is evaluated per {scope}; it cannot run as an organization-wide test.",
        evaluated_at=now,
    )


async def run_automated_tests(
    session: AsyncSession,
    *,
    organization_id: str,
    client: SourceHostingClient,
    actor_id: str | None = None,
    now: datetime | None = None,
    item_ids: Iterable[str] | None = None,
) -> RunSummary:
    """Evaluate every Automated tracked item and apply the verdicts to the items."""
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    summary = RunSummary(organization_id=organization_id, kind="automated_tests")
    if not settings.compliance_enabled:
        summary.status = "skipped"
        return summary.finish()

    stmt = select(TrackedItem).where(
        TrackedItem.organization_id == organization_id,
        TrackedItem.item_type == "Automated",
        TrackedItem.check_name.is_not(None),
    )
    if item_ids is not None:
        stmt = stmt.where(TrackedItem.id.in_(list(item_ids)))
    items = list((await session.execute(stmt.order_by(TrackedItem.name))).scalars().all())
    if not items:
        return summary.finish()

    source, cache = _build_source(client, now)
    try:
        try:
            await source.repos()
        except (SourceAuthError, SourceUnavailableError, IntegrationUnavailableError) as exc:
            # Leave items untouched rather than flag them all on an outage.
            logger.warning("automated_tests_aborted run=%s org=%s", summary.run_id, organization_id, exc_info=exc)
            summary.fail(str(exc))
            return await _finish(session, summary, actor_id=actor_id)

        # Items created before scope validation may name repository or device checks.
        runnable = [item for item in items if _runs_per_organization(item.check_name)]
        for item in items:
            if item not in runnable:
                await apply_run_to_item(
                    session, item=item, verdict=_out_of_scope_verdict(item, now), now=now, actor_id=actor_id
                )
        if not runnable:
            return await _finish(session, summary, actor_id=actor_id)

        linked, active = await _identity_logins(session, organization_id)
        owner_id = await resolve_owner(session, organization_id, actor_id)
        org_subject = _subject_ref(
            await _ensure_organization_subject(session, organization_id=organization_id, owner_id=owner_id)
        )
        evaluator = RuleEvaluator()
        verdicts = await asyncio.gather(
            *(
                evaluator.evaluate(
                    item.check_name or "",
                    EvaluationContext(
                        organization_id=organization_id,
                        subject=org_subject,
                        now=now,
                        source=source,
                        linked_logins=linked,
                        active_logins=active,
                        review_window_days=settings.review_window_days,
                        self_review_pr_cap=settings.self_review_pr_cap,
                    ),
                )
                for item in runnable
            )
        )
        tally = _Tally()
        await _persist_all(
            session,
            summary=summary,
            pairs=[(org_subject, verdict) for verdict in verdicts],
            tally=tally,
            collected_by=_SOURCE_COLLECTOR,
            now=now,
            actor_id=actor_id,
        )
        for item, verdict in zip(runnable, verdicts):
            await apply_run_to_item(session, item=item, verdict=verdict, now=now, actor_id=actor_id)
        tally.apply(summary)
        summary.control_statuses = await recompute_control_statuses(session, organization_id)
        return await _finish(session, summary, actor_id=actor_id)
    finally:
        await cache.close()


async def apply_run_to_item(
    session: AsyncSession,
    *,
    item: TrackedItem,
    verdict: Verdict,
    now: datetime,
    actor_id: str | None = None,
) -> None:
    # A fresh run supersedes any manual override on automated items.
    await session.refresh(item)
    old_status = item.status
    new_status = status_from_verdict(verdict.result)
    item.status = new_status
    item.completed_at = now if new_status == OK else None
    item.last_run_result = verdict.result
    item.last_run_summary = verdict.summary
    item.last_run_at = now
    session.add(
        TrackedItemRun(
            item_id=item.id,
            organization_id=item.organization_id,
            result=verdict.result,
            summary=verdict.summary,
            findings_json=verdict.findings,
            executed_at=now,
        )
    )
    if old_status != new_status:
        session.add(
            TrackedItemHistory(
                item_id=item.id,
                changed_by=actor_id,
                change_type="AUTOMATED_RUN",
                old_value=old_status,
                new_value=new_status,
            )
        )
    await session.commit()


async def process_device_checkin(
    session: AsyncSession,
    *,
    subject: Subject,
    posture: DevicePosture,
    now: datetime | None = None,
) -> RunSummary:
    """Evaluate the posture rules for one device and reconcile its risks."""
    now = now or datetime.now(timezone.utc)
    organization_id = subject.organization_id
    summary = RunSummary(organization_id=organization_id, kind="device_checkin")
    if not get_settings().compliance_enabled:
        summary.status = "skipped"
        return summary.finish()
    ref = _subject_ref(subject)
    flags = posture.flags()
    evaluator = RuleEvaluator()
    verdicts = [
        await evaluator.evaluate(
            definition.name,
            EvaluationContext(organization_id=organization_id, subject=ref, now=now, posture=flags),
        )
        for definition in checks_for_scope("DEVICE")
    ]
    tally = _Tally()
    await _persist_all(
        session,
        summary=summary,
        pairs=[(ref, verdict) for verdict in verdicts],
        tally=tally,
        collected_by=_DEVICE_COLLECTOR,
        now=now,
        actor_id=None,
    )
    tally.apply(summary)
    summary.control_statuses = await recompute_control_statuses(session, organization_id)
    summary.finish()
    passed = sum(1 for verdict in verdicts if verdict.result == PASS)
    logger.info(
        "device_checkin_reconciled subject=%s passed=%s total=%s", ref.id, passed, len(verdicts)
    )
    return summary
