from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from postureledger.core.config import get_settings
from postureledger.core.errors import SourceAuthError, SourceUnavailableError
from postureledger.domain.models import (
    AuditEvent,
    CheckResult,
    Evidence,
    Risk,
    Subject,
    TrackedItem,
    TrackedItemRun,
)
from postureledger.persistence.db import SessionLocal
from postureledger.services.compliance.engine import run_automated_tests, run_repository_scan
from postureledger.services.controls import seed_controls
from postureledger.services.tracked_items import list_items, list_runs, seed_automated_items
from postureledger.tests.utils.records import create_organization, create_user
from postureledger.tests.utils.source import (
    FULL_PROTECTION,
    FakeSourceClient,
    make_alert,
    make_repo,
)


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _scan_client() -> FakeSourceClient:
    repos = [make_repo("acme/api"), make_repo("acme/site", private=False)]
    return FakeSourceClient(
        repos=repos,
        orgs=[{"login": "acme"}],
        org_details={"acme": {"login": "acme", "two_factor_requirement_enabled": True}},
        members={"acme": [{"login": "alice", "id": 1}]},
        alerts={"acme/api": [make_alert("high", "lodash"), make_alert("high", "minimist")]},
        protections={"acme/api": FULL_PROTECTION},
        commits={"acme/api": [{"sha": "a1", "commit": {"verification": {"verified": True}}}]},
        workflows={"acme/api": {"total_count": 1, "workflows": [{"name": "ci"}]}},
        collaborators={"acme/api": [{"login": "alice", "permissions": {"admin": True}}]},
    )


async def _prepared_org() -> tuple[str, str]:
    org_id = await create_organization()
    admin_id = await create_user(org_id, role="ORG_ADMIN", github_login="alice")
    async with SessionLocal() as session:
        await seed_controls(session, org_id)
    return org_id, admin_id


@pytest.mark.asyncio
async def test_repository_scan_reconciles_each_repo() -> None:
    org_id, admin_id = await _prepared_org()
    client = _scan_client()

    async with SessionLocal() as session:
        summary = await run_repository_scan(session, organization_id=org_id, client=client, actor_id=admin_id, now=NOW)

    assert summary.status == "succeeded"
    assert sum(summary.verdicts.values()) == 10
    async with SessionLocal() as session:
        subjects = {
            subject.name: subject
            for subject in (await session.execute(select(Subject).where(Subject.organization_id == org_id))).scalars()
        }
        risk_titles = set(
            (await session.execute(select(Risk.title).where(Risk.organization_id == org_id, Risk.status == "OPEN"))).scalars()
        )
        results = (await session.execute(select(func.count(CheckResult.id)))).scalar_one()

    assert set(subjects) == {"GitHub Organisation", "acme/api", "acme/site"}
    assert subjects["acme/site"].parent_id == subjects["GitHub Organisation"].id
    assert subjects["acme/api"].owner_id == admin_id
    assert "Public repository exposure: acme/site" in risk_titles
    assert not any(title.endswith("acme/api") and "exposure" in title for title in risk_titles)
    assert results == 10
    assert summary.control_statuses["A.8.25"] == "PARTIALLY_IMPLEMENTED"
    # Each sub-resource is fetched once per run even though several checks read it.
    assert client.calls["list_repos"] == 1
    assert client.calls["list_workflows"] == 2


@pytest.mark.asyncio
async def test_rescan_with_same_data_adds_no_evidence() -> None:
    org_id, admin_id = await _prepared_org()

    async with SessionLocal() as session:
        first = await run_repository_scan(session, organization_id=org_id, client=_scan_client(), actor_id=admin_id, now=NOW)
        second = await run_repository_scan(
            session, organization_id=org_id, client=_scan_client(), actor_id=admin_id, now=NOW + timedelta(days=1)
        )
        evidence = (await session.execute(select(func.count(Evidence.id)))).scalar_one()
        risks = (await session.execute(select(func.count(Risk.id)))).scalar_one()

    assert first.evidence_created > 0
    assert second.evidence_created == 0
    assert second.risk_transitions == {}
    assert evidence == first.evidence_created
    assert risks == first.risk_transitions["CREATED"]


@pytest.mark.asyncio
async def test_scan_aborts_when_source_rejects_the_token() -> None:
    org_id, admin_id = await _prepared_org()
    client = FakeSourceClient(fail_with=SourceAuthError("bad credentials", status_code=401))

    async with SessionLocal() as session:
        summary = await run_repository_scan(session, organization_id=org_id, client=client, actor_id=admin_id, now=NOW)
        subjects = (await session.execute(select(func.count(Subject.id)))).scalar_one()
        events = (await session.execute(select(AuditEvent.event_type, AuditEvent.outcome))).all()

    assert summary.status == "failed"
    assert summary.errors == ["bad credentials"]
    assert subjects == 0
    assert ("compliance.repository_scan.failed", "failure") in [tuple(row) for row in events]


@pytest.mark.asyncio
async def test_disabled_engine_skips_runs(monkeypatch) -> None:
    monkeypatch.setenv("COMPLIANCE_ENABLED", "false")
    get_settings.cache_clear()
    org_id, admin_id = await _prepared_org()
    client = _scan_client()
    async with SessionLocal() as session:
        summary = await run_repository_scan(session, organization_id=org_id, client=client, actor_id=admin_id, now=NOW)
    assert summary.status == "skipped"
    assert sum(client.calls.values()) == 0


@pytest.mark.asyncio
async def test_automated_tests_update_items_and_keep_run_history() -> None:
    org_id, admin_id = await _prepared_org()
    async with SessionLocal() as session:
        await seed_automated_items(session, org_id, actor_id=admin_id, now=NOW)
        summary = await run_automated_tests(session, organization_id=org_id, client=_scan_client(), actor_id=admin_id, now=NOW)
        rows = {item.check_name: (item, display) for item, display in await list_items(session, org_id, now=NOW)}
        runs = await list_runs(session, org_id, rows["repos_private"][0].id)

    assert summary.status == "succeeded"
    assert rows["repos_private"][1] == "Needs_remediation"
    assert rows["repos_private"][0].last_run_summary == "1 public repositories found."
    assert rows["vulnerabilities_high"][1] == "Needs_remediation"
    assert rows["vulnerabilities_critical"][1] == "OK"
    assert rows["mfa_enforced"][1] == "OK"
    assert rows["members_mapped"][1] == "OK"
    assert len(runs) == 1
    assert runs[0].result == "Fail"


@pytest.mark.asyncio
async def test_automated_tests_leave_items_alone_during_outage() -> None:
    org_id, admin_id = await _prepared_org()
    client = FakeSourceClient(fail_with=SourceUnavailableError("GitHub /user/repos returned 503", status_code=503))
    async with SessionLocal() as session:
        await seed_automated_items(session, org_id, actor_id=admin_id, now=NOW)
        summary = await run_automated_tests(session, organization_id=org_id, client=client, actor_id=admin_id, now=NOW)
        statuses = {display for _item, display in await list_items(session, org_id, now=NOW)}
        runs = (await session.execute(select(func.count(TrackedItemRun.id)))).scalar_one()

    assert summary.status == "failed"
    assert statuses == {"Due_soon"}
    assert runs == 0


@pytest.mark.asyncio
async def test_automated_run_can_target_selected_items() -> None:
    org_id, admin_id = await _prepared_org()
    async with SessionLocal() as session:
        items = await seed_automated_items(session, org_id, actor_id=admin_id, now=NOW)
        target = next(item for item in items if item.check_name == "vcs_present")
        summary = await run_automated_tests(
            session,
            organization_id=org_id,
            client=_scan_client(),
            actor_id=admin_id,
            now=NOW,
            item_ids=[target.id],
        )
    assert summary.verdicts == {"Pass": 1}


@pytest.mark.asyncio
async def test_automated_run_skips_checks_scoped_to_other_subjects() -> None:
    org_id, admin_id = await _prepared_org()
    async with SessionLocal() as session:
        item = TrackedItem(
            organization_id=org_id,
            name="Disk encryption",
            item_type="Automated",
            check_name="disk_encryption",
            owner_id=admin_id,
            due_date=NOW + timedelta(days=60),
        )
        session.add(item)
        await session.commit()
        summary = await run_automated_tests(session, organization_id=org_id, client=_scan_client(), actor_id=admin_id, now=NOW)
        await session.refresh(item)
        risks = (await session.execute(select(func.count(Risk.id)))).scalar_one()
        results = (await session.execute(select(func.count(CheckResult.id)))).scalar_one()

    assert summary.status == "succeeded"
    assert summary.verdicts == {}
    assert item.last_run_result == "Warning"
    assert item.last_run_summary.startswith("disk_encryption is evaluated per device")
    assert risks == 0
    assert results == 0


def _fleet_client(*names: str) -> FakeSourceClient:
    repos = [make_repo("acme/api")] + [make_repo(name, private=False) for name in names]
    return FakeSourceClient(
        repos=repos,
        members={"acme": [{"login": "alice", "id": 1}]},
        protections={"acme/api": FULL_PROTECTION},
        commits={"acme/api": [{"sha": "a1", "commit": {"verification": {"verified": True}}}]},
        workflows={"acme/api": {"total_count": 1, "workflows": [{"name": "ci"}]}},
        collaborators={"acme/api": [{"login": "alice", "permissions": {"admin": True}}]},
    )


@pytest.mark.asyncio
async def test_repositories_missing_from_a_scan_stop_counting() -> None:
    org_id, admin_id = await _prepared_org()
    baseline_org, baseline_admin = await _prepared_org()
    leak_title = "Public repository exposure: acme/leaked"

    async with SessionLocal() as session:
        first = await run_repository_scan(
            session, organization_id=org_id, client=_fleet_client("acme/leaked"), actor_id=admin_id, now=NOW
        )
        second = await run_repository_scan(
            session, organization_id=org_id, client=_fleet_client(), actor_id=admin_id, now=NOW + timedelta(days=1)
        )
        baseline = await run_repository_scan(
            session, organization_id=baseline_org, client=_fleet_client(), actor_id=baseline_admin, now=NOW
        )
        leaked = (
            await session.execute(select(Subject).where(Subject.organization_id == org_id, Subject.name == "acme/leaked"))
        ).scalar_one()
        open_for_leaked = (
            await session.execute(
                select(func.count(Risk.id)).where(Risk.subject_id == leaked.id, Risk.status == "OPEN")
            )
        ).scalar_one()
        leak_risk = (await session.execute(select(Risk).where(Risk.title == leak_title))).scalar_one()

    assert first.subjects_removed == 0
    assert second.subjects_removed == 1
    assert second.risk_transitions["MITIGATED"] >= 1
    assert leaked.status == "REMOVED"
    assert open_for_leaked == 0
    assert leak_risk.status == "MITIGATED"
    assert second.control_statuses == baseline.control_statuses

    async with SessionLocal() as session:
        third = await run_repository_scan(
            session,
            organization_id=org_id,
            client=_fleet_client("acme/leaked"),
            actor_id=admin_id,
            now=NOW + timedelta(days=2),
        )
        leaked = await session.get(Subject, leaked.id, populate_existing=True)
        reopened = (await session.execute(select(Risk).where(Risk.title == leak_title))).scalar_one()

    assert third.risk_transitions["REOPENED"] >= 1
    assert leaked.status == "ACTIVE"
    assert reopened.id == leak_risk.id
    assert reopened.status == "OPEN"


@pytest.mark.asyncio
async def test_empty_listing_keeps_known_repositories() -> None:
    org_id, admin_id = await _prepared_org()
    async with SessionLocal() as session:
        await run_repository_scan(session, organization_id=org_id, client=_fleet_client(), actor_id=admin_id, now=NOW)
        summary = await run_repository_scan(
            session, organization_id=org_id, client=FakeSourceClient(), actor_id=admin_id, now=NOW + timedelta(days=1)
        )
        statuses = set(
            (await session.execute(select(Subject.status).where(Subject.kind == "REPO"))).scalars()
        )

    assert summary.subjects_removed == 0
    assert statuses == {"ACTIVE"}
