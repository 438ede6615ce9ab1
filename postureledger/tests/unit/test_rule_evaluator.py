from __future__ import annotations

from datetime import datetime, timezone

import pytest

from postureledger.services.compliance.checks import CHECKS, FAIL, PASS, WARNING
from postureledger.services.compliance.data_source import CachedDataSource, RunCache
from postureledger.services.compliance.evaluator import (
    CheckOutcome,
    EvaluationContext,
    RuleEvaluator,
    SubjectRef,
    registered_checks,
)
from postureledger.tests.utils.source import (
    FULL_PROTECTION,
    FakeSourceClient,
    make_alert,
    make_pull,
    make_repo,
    make_review,
)


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
RECENT = "2026-09-25T12:00:00Z"
ORG_SUBJECT = SubjectRef(id="subject-org", kind="ORGANIZATION", name="GitHub Organisation")


def _context(client: FakeSourceClient, **kwargs) -> EvaluationContext:
    source = CachedDataSource(client=client, cache=RunCache(), now=NOW)
    return EvaluationContext(organization_id="org-1", subject=kwargs.pop("subject", ORG_SUBJECT), now=NOW, source=source, **kwargs)


def test_every_check_has_an_evaluator() -> None:
    assert registered_checks() == sorted(CHECKS)


@pytest.mark.asyncio
async def test_unknown_check_yields_warning() -> None:
    verdict = await RuleEvaluator().evaluate("nonexistent_check", _context(FakeSourceClient()))
    assert verdict.result == WARNING
    assert verdict.summary == 'No evaluator implemented for: "nonexistent_check"'
    assert verdict.evaluated_at == NOW


@pytest.mark.asyncio
async def test_crashing_rule_yields_fail() -> None:
    async def _boom(ctx: EvaluationContext) -> CheckOutcome:
        raise RuntimeError("kaput")

    evaluator = RuleEvaluator(registry={"vcs_present": _boom})
    verdict = await evaluator.evaluate("vcs_present", _context(FakeSourceClient()))
    assert verdict.result == FAIL
    assert verdict.summary == "Evaluation error: kaput"


@pytest.mark.asyncio
async def test_missing_source_is_an_evaluation_error() -> None:
    ctx = EvaluationContext(organization_id="org-1", subject=ORG_SUBJECT, now=NOW)
    verdict = await RuleEvaluator().evaluate("repos_private", ctx)
    assert verdict.result == FAIL
    assert verdict.summary.startswith("Evaluation error:")


@pytest.mark.asyncio
async def test_high_vulnerabilities_fail_with_one_finding_per_repo() -> None:
    client = FakeSourceClient(
        repos=[make_repo("acme/api"), make_repo("acme/web")],
        alerts={"acme/api": [make_alert("high", "lodash"), make_alert("high", "minimist"), make_alert("low", "chalk")]},
    )
    ctx = _context(client)
    evaluator = RuleEvaluator()

    high = await evaluator.evaluate("vulnerabilities_high", ctx)
    critical = await evaluator.evaluate("vulnerabilities_critical", ctx)

    assert high.result == FAIL
    assert high.summary == "2 open high vulnerability alerts across 1 repositories."
    assert len(high.findings) == 1
    assert high.findings[0]["repo"] == "acme/api"
    assert high.findings[0]["count"] == 2
    assert [pkg["package"] for pkg in high.findings[0]["packages"]] == ["lodash", "minimist"]
    assert critical.result == PASS
    # Both checks read the same cached alert lists.
    assert client.calls["list_vulnerability_alerts"] == 2


@pytest.mark.asyncio
async def test_all_private_repositories_pass_visibility() -> None:
    repos = [make_repo(f"acme/private-{index}") for index in range(3)]
    verdict = await RuleEvaluator().evaluate("repos_private", _context(FakeSourceClient(repos=repos)))
    assert verdict.result == PASS
    assert verdict.summary == "All 3 repositories are private."
    assert verdict.findings == []


@pytest.mark.asyncio
async def test_one_public_repository_fails_visibility() -> None:
    repos = [make_repo(f"acme/private-{index}") for index in range(4)] + [make_repo("acme/site", private=False)]
    verdict = await RuleEvaluator().evaluate("repos_private", _context(FakeSourceClient(repos=repos)))
    assert verdict.result == FAIL
    assert verdict.summary == "1 public repositories found."
    assert verdict.findings == [{"name": "acme/site", "visibility": "public"}]


@pytest.mark.asyncio
async def test_changes_approved_thresholds_use_exact_ratios() -> None:
    pulls = [make_pull(number, author="alice", updated_at=RECENT) for number in range(1, 6)]
    reviews = {("acme/api", number): [make_review("bob")] for number in range(1, 5)}
    reviews[("acme/api", 5)] = [make_review("bob", state="COMMENTED")]
    client = FakeSourceClient(repos=[make_repo("acme/api")], pulls={"acme/api": pulls}, reviews=reviews)

    verdict = await RuleEvaluator().evaluate("changes_approved", _context(client))

    # 4 of 5 is exactly the 80% warning boundary.
    assert verdict.result == WARNING
    assert verdict.summary.startswith("4/5 pull requests (80%)")
    assert verdict.findings == [{"repo": "acme/api", "number": 5, "title": "Change 5"}]


@pytest.mark.asyncio
async def test_unmerged_pulls_do_not_count() -> None:
    pulls = [make_pull(1, author="alice", updated_at=RECENT, merged=False)]
    client = FakeSourceClient(repos=[make_repo("acme/api")], pulls={"acme/api": pulls})
    verdict = await RuleEvaluator().evaluate("changes_reviewed", _context(client))
    assert verdict.result == PASS
    assert client.calls["list_pull_reviews"] == 0


@pytest.mark.asyncio
async def test_self_approval_is_flagged() -> None:
    pulls = [make_pull(7, author="alice", updated_at=RECENT), make_pull(8, author="carol", updated_at=RECENT)]
    reviews = {
        ("acme/api", 7): [make_review("alice")],
        ("acme/api", 8): [make_review("dave")],
    }
    client = FakeSourceClient(repos=[make_repo("acme/api")], pulls={"acme/api": pulls}, reviews=reviews)
    verdict = await RuleEvaluator().evaluate("author_not_reviewer", _context(client))
    assert verdict.result == FAIL
    assert verdict.findings == [{"repo": "acme/api", "number": 7, "author": "alice"}]


@pytest.mark.asyncio
async def test_member_checks_use_linked_and_active_logins() -> None:
    client = FakeSourceClient(
        orgs=[{"login": "acme"}],
        members={"acme": [{"login": "Alice", "id": 1}, {"login": "bob", "id": 2}]},
    )
    ctx = _context(client, linked_logins=frozenset({"alice", "bob"}), active_logins=frozenset({"alice"}))
    evaluator = RuleEvaluator()

    mapped = await evaluator.evaluate("members_mapped", ctx)
    deprovisioned = await evaluator.evaluate("accounts_deprovisioned", ctx)

    assert mapped.result == PASS
    assert deprovisioned.result == FAIL
    assert deprovisioned.findings == [{"login": "bob"}]
    assert client.calls["list_org_members"] == 1


@pytest.mark.asyncio
async def test_mfa_unreadable_is_a_warning() -> None:
    client = FakeSourceClient(orgs=[{"login": "acme"}], denied={"get_org"})
    verdict = await RuleEvaluator().evaluate("mfa_enforced", _context(client))
    assert verdict.result == WARNING


@pytest.mark.asyncio
async def test_no_org_yields_warning_for_member_checks() -> None:
    verdict = await RuleEvaluator().evaluate("accounts_associated", _context(FakeSourceClient()))
    assert verdict.result == WARNING


@pytest.mark.asyncio
async def test_branch_protection_per_repository() -> None:
    repos = [make_repo("acme/api"), make_repo("acme/web")]
    client = FakeSourceClient(repos=repos, protections={"acme/api": FULL_PROTECTION})
    evaluator = RuleEvaluator()

    protected = await evaluator.evaluate(
        "branch_protection",
        _context(client, subject=SubjectRef(id="s-api", kind="REPO", name="acme/api"), repo=repos[0]),
    )
    unprotected = await evaluator.evaluate(
        "branch_protection",
        _context(client, subject=SubjectRef(id="s-web", kind="REPO", name="acme/web"), repo=repos[1]),
    )

    assert protected.result == PASS
    assert unprotected.result == FAIL
    assert unprotected.summary == 'Branch protection is not configured on "main".'


@pytest.mark.asyncio
async def test_device_rule_reads_one_posture_flag() -> None:
    subject = SubjectRef(id="s-laptop", kind="DEVICE", name="laptop-01")
    ctx = EvaluationContext(
        organization_id="org-1",
        subject=subject,
        now=NOW,
        posture={"disk_encryption_enabled": False, "firewall_enabled": True},
    )
    evaluator = RuleEvaluator()
    assert (await evaluator.evaluate("disk_encryption", ctx)).result == FAIL
    assert (await evaluator.evaluate("firewall", ctx)).result == PASS
