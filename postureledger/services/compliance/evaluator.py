from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from postureledger.core.errors import CheckEvaluationError
from postureledger.services.compliance.checks import (
    CHECKS,
    FAIL,
    PASS,
    WARNING,
    CheckName,
    VerdictResult,
)
from postureledger.services.compliance.data_source import CachedDataSource, NoData


logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "high", "medium", "low")


@dataclass(frozen=True)
class SubjectRef:
    id: str
    kind: str
    name: str


@dataclass(frozen=True)
class Verdict:
    check_name: str
    subject_id: str
    result: VerdictResult
    summary: str
    findings: list[dict[str, Any]] = field(default_factory=list)
    raw_payload: dict[str, Any] = field(default_factory=dict)
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def result_payload(self) -> dict[str, Any]:
        # Hashed for evidence dedup; must not carry the evaluation instant.
        return {
            "check_name": self.check_name,
            "subject_id": self.subject_id,
            "result": self.result,
            "summary": self.summary,
            "findings": self.findings,
            "raw": self.raw_payload,
        }


@dataclass
class EvaluationContext:
    """Everything a check may read besides the cached source data."""

    organization_id: str
    subject: SubjectRef
    now: datetime
    source: CachedDataSource | None = None
    repo: dict[str, Any] | None = None
    posture: dict[str, Any] | None = None
    linked_logins: frozenset[str] = frozenset()
    active_logins: frozenset[str] = frozenset()
    review_window_days: int = 30
    self_review_pr_cap: int = 20

    def require_source(self) -> CachedDataSource:
        if self.source is None:
            raise CheckEvaluationError("check needs a source-hosting data source")
        return self.source

    def require_repo(self) -> dict[str, Any]:
        if self.repo is None:
            raise CheckEvaluationError("check needs repository metadata")
        return self.repo


@dataclass(frozen=True)
class CheckOutcome:
    """What an evaluator function decides; the evaluator stamps identity onto it."""

    result: VerdictResult
    summary: str
    findings: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


EvaluatorFn = Callable[[EvaluationContext], Awaitable[CheckOutcome]]

_REGISTRY: dict[CheckName, EvaluatorFn] = {}


def register(*names: CheckName) -> Callable[[Callable[..., Awaitable[CheckOutcome]]], Callable[..., Awaitable[CheckOutcome]]]:
    def _decorator(fn: Callable[..., Awaitable[CheckOutcome]]) -> Callable[..., Awaitable[CheckOutcome]]:
        for name in names:
            if name not in CHECKS:
                raise ValueError(f"unknown check {name}")
            _REGISTRY[name] = fn
        return fn

    return _decorator


def registered_checks() -> list[str]:
    return sorted(_REGISTRY)


class RuleEvaluator:
    def __init__(self, registry: dict[CheckName, EvaluatorFn] | None = None) -> None:
        self._registry = registry if registry is not None else _REGISTRY

    async def evaluate(self, check_name: str, context: EvaluationContext) -> Verdict:
        fn = self._registry.get(check_name)  # type: ignore[call-overload]
        if fn is None:
            outcome = CheckOutcome(result=WARNING, summary=f'No evaluator implemented for: "{check_name}"')
        else:
            try:
                outcome = await fn(context)
            except Exception as exc:
                # A crashed rule must never read as compliant.
                logger.exception(
                    "check_evaluation_failed check=%s subject=%s", check_name, context.subject.id
                )
                outcome = CheckOutcome(result=FAIL, summary=f"Evaluation error: {exc}")
        return Verdict(
            check_name=check_name,
            subject_id=context.subject.id,
            result=outcome.result,
            summary=outcome.summary,
            findings=outcome.findings,
            raw_payload=outcome.raw,
            evaluated_at=context.now,
        )


def _severity_of(alert: dict[str, Any]) -> str:
    advisory = alert.get("security_advisory") or {}
    severity = advisory.get("severity") or (alert.get("security_vulnerability") or {}).get("severity") or ""
    return str(severity).lower()


def _vulnerability_evaluator(severity: str) -> EvaluatorFn:
    async def _evaluate(ctx: EvaluationContext) -> CheckOutcome:
        source = ctx.require_source()
        repos = await source.repos()
        findings: list[dict[str, Any]] = []
        for repo in repos:
            alerts = await source.vulnerability_alerts(repo["full_name"])
            matching = [alert for alert in alerts if _severity_of(alert) == severity]
            if not matching:
                continue
            findings.append(
                {
                    "repo": repo["full_name"],
                    "count": len(matching),
                    "packages": [
                        {
                            "package": ((alert.get("dependency") or {}).get("package") or {}).get("name"),
                            "advisory": (alert.get("security_advisory") or {}).get("summary"),
                            "cve": (alert.get("security_advisory") or {}).get("cve_id"),
                        }
                        for alert in matching
                    ],
                }
            )
        total = sum(finding["count"] for finding in findings)
        if total == 0:
            return CheckOutcome(
                result=PASS,
                summary=f"No open {severity} vulnerabilities found across {len(repos)} repositories.",
            )
        return CheckOutcome(
            result=FAIL,
            summary=f"{total} open {severity} vulnerability alerts across {len(findings)} repositories.",
            findings=findings,
            raw={"total": total},
        )

    return _evaluate


for _severity in SEVERITIES:
    register(f"vulnerabilities_{_severity}")(_vulnerability_evaluator(_severity))  # type: ignore[arg-type]


@register("accounts_associated")
async def _accounts_associated(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    org = await source.primary_org()
    if org is None:
        return CheckOutcome(
            result=WARNING,
            summary="No GitHub organization found. Install the app on a GitHub organization for member checks.",
        )
    members = await source.org_members(org)
    return CheckOutcome(
        result=PASS if members else WARNING,
        summary=f'{len(members)} member(s) found in GitHub organization "{org}".',
        findings=[{"login": member.get("login"), "id": member.get("id")} for member in members],
        raw={"org": org},
    )


@register("members_mapped")
async def _members_mapped(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    org = await source.primary_org()
    if org is None:
        return CheckOutcome(
            result=WARNING,
            summary="No GitHub organization accessible. Cannot perform member mapping check.",
        )
    members = await source.org_members(org)
    unmapped = [m for m in members if (m.get("login") or "").lower() not in ctx.linked_logins]
    if not unmapped:
        return CheckOutcome(
            result=PASS,
            summary=f"All {len(members)} GitHub organization members are mapped to internal users.",
            raw={"org": org, "members": len(members)},
        )
    return CheckOutcome(
        result=FAIL,
        summary=f"{len(unmapped)} GitHub organization member(s) not mapped to any internal user.",
        findings=[{"login": m.get("login")} for m in unmapped],
        raw={"org": org, "members": len(members)},
    )


@register("accounts_deprovisioned")
async def _accounts_deprovisioned(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    org = await source.primary_org()
    if org is None:
        return CheckOutcome(result=WARNING, summary="No GitHub organization accessible.")
    members = await source.org_members(org)
    stale = [m for m in members if (m.get("login") or "").lower() not in ctx.active_logins]
    if not stale:
        return CheckOutcome(result=PASS, summary="No stale GitHub accounts detected.", raw={"org": org})
    return CheckOutcome(
        result=FAIL,
        summary=f"{len(stale)} GitHub member(s) have no matching active personnel.",
        findings=[{"login": m.get("login")} for m in stale],
        raw={"org": org},
    )


@register("mfa_enforced")
async def _mfa_enforced(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    org = await source.primary_org()
    if org is None:
        return CheckOutcome(
            result=WARNING,
            summary="No GitHub organization found. MFA enforcement cannot be verified.",
        )
    required = await source.org_mfa_required(org)
    findings = [{"org": org, "mfa_enforced": required}]
    if required is True:
        return CheckOutcome(result=PASS, summary=f'MFA is enforced for GitHub organization "{org}".', findings=findings)
    if required is False:
        return CheckOutcome(
            result=FAIL, summary=f'MFA is NOT enforced for GitHub organization "{org}".', findings=findings
        )
    return CheckOutcome(
        result=WARNING,
        summary=f'Cannot determine MFA status for GitHub organization "{org}" (insufficient permissions).',
        findings=findings,
    )


async def _merged_pulls(source: CachedDataSource) -> list[tuple[str, dict[str, Any]]]:
    merged: list[tuple[str, dict[str, Any]]] = []
    for repo in await source.repos():
        for pull in await source.recent_pulls(repo["full_name"]):
            if pull.get("merged_at"):
                merged.append((repo["full_name"], pull))
    return merged


def _pull_ref(full_name: str, pull: dict[str, Any]) -> dict[str, Any]:
    return {"repo": full_name, "number": pull.get("number"), "title": pull.get("title")}


def _percent(part: int, total: int) -> int:
    return round(part * 100 / total) if total else 100


@register("changes_approved")
async def _changes_approved(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    pulls = await _merged_pulls(source)
    if not pulls:
        return CheckOutcome(result=PASS, summary=f"No merged pull requests in the last {ctx.review_window_days} days.")
    approved = 0
    findings: list[dict[str, Any]] = []
    for full_name, pull in pulls:
        reviews = await source.pull_reviews(full_name, pull["number"])
        if reviews is None:
            has_approval = (pull.get("review_comments") or 0) > 0
        else:
            has_approval = any(review.get("state") == "APPROVED" for review in reviews)
        if has_approval:
            approved += 1
        else:
            findings.append(_pull_ref(full_name, pull))
    total = len(pulls)
    # Exact ratios; the rounded percentage is only for display.
    if approved == total:
        result = PASS
    elif approved * 10 >= total * 8:
        result = WARNING
    else:
        result = FAIL
    return CheckOutcome(
        result=result,
        summary=(
            f"{approved}/{total} pull requests ({_percent(approved, total)}%) in the last "
            f"{ctx.review_window_days} days were approved."
        ),
        findings=findings,
        raw={"approved": approved, "total": total},
    )


@register("changes_reviewed")
async def _changes_reviewed(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    pulls = await _merged_pulls(source)
    if not pulls:
        return CheckOutcome(result=PASS, summary=f"No merged pull requests in the last {ctx.review_window_days} days.")
    reviewed = 0
    findings: list[dict[str, Any]] = []
    for full_name, pull in pulls:
        if (pull.get("review_comments") or 0) > 0:
            reviewed += 1
            continue
        reviews = await source.pull_reviews(full_name, pull["number"])
        if reviews:
            reviewed += 1
        else:
            findings.append(_pull_ref(full_name, pull))
    total = len(pulls)
    if reviewed * 10 >= total * 9:
        result = PASS
    elif reviewed * 10 >= total * 7:
        result = WARNING
    else:
        result = FAIL
    return CheckOutcome(
        result=result,
        summary=(
            f"{reviewed}/{total} pull requests ({_percent(reviewed, total)}%) reviewed in the last "
            f"{ctx.review_window_days} days."
        ),
        findings=findings,
        raw={"reviewed": reviewed, "total": total},
    )


@register("author_not_reviewer")
async def _author_not_reviewer(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    violations: list[dict[str, Any]] = []
    checked = 0
    for repo in await source.repos():
        full_name = repo["full_name"]
        pulls = [pull for pull in await source.recent_pulls(full_name) if pull.get("merged_at")]
        for pull in pulls[: ctx.self_review_pr_cap]:
            reviews = await source.pull_reviews(full_name, pull["number"])
            if reviews is None:
                continue
            checked += 1
            author = (pull.get("user") or {}).get("login")
            if any(
                review.get("state") == "APPROVED" and (review.get("user") or {}).get("login") == author
                for review in reviews
            ):
                violations.append({"repo": full_name, "number": pull.get("number"), "author": author})
    if not violations:
        return CheckOutcome(
            result=PASS,
            summary=f"No self-approved pull requests found (checked {checked} pull requests).",
            raw={"checked": checked},
        )
    return CheckOutcome(
        result=FAIL,
        summary=f"{len(violations)} pull request(s) where the author self-approved.",
        findings=violations,
        raw={"checked": checked},
    )


@register("vcs_present")
async def _vcs_present(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    active = [repo for repo in await source.repos() if not repo.get("archived")]
    if not active:
        return CheckOutcome(result=FAIL, summary="No active repositories found.")
    return CheckOutcome(
        result=PASS,
        summary=f"{len(active)} active repositories found.",
        # updated_at would churn the evidence hash on every push.
        findings=[{"name": repo["full_name"]} for repo in active],
    )


@register("repos_private")
async def _repos_private(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    repos = await source.repos()
    public = [repo for repo in repos if not repo.get("private")]
    if not public:
        return CheckOutcome(result=PASS, summary=f"All {len(repos)} repositories are private.")
    return CheckOutcome(
        result=FAIL,
        summary=f"{len(public)} public repositories found.",
        findings=[{"name": repo["full_name"], "visibility": repo.get("visibility", "public")} for repo in public],
    )


@register("branch_protection")
async def _branch_protection(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    repo = ctx.require_repo()
    branch = repo.get("default_branch") or "main"
    protection = await source.branch_protection(repo["full_name"], branch)
    if isinstance(protection, NoData):
        if protection.status_code == 404:
            return CheckOutcome(result=FAIL, summary=f'Branch protection is not configured on "{branch}".')
        return CheckOutcome(
            result=WARNING,
            summary=f'Cannot read branch protection for "{branch}" (insufficient permissions).',
        )
    reviews = protection.get("required_pull_request_reviews") or {}
    required_reviews = int(reviews.get("required_approving_review_count") or 0)
    # Absent means GitHub did not report the setting; treat as allowed.
    force_pushes_allowed = bool((protection.get("allow_force_pushes") or {}).get("enabled", True))
    status_checks = protection.get("required_status_checks") is not None
    raw = {
        "branch": branch,
        "required_reviews": required_reviews,
        "force_pushes_allowed": force_pushes_allowed,
        "status_checks_required": status_checks,
    }
    findings: list[dict[str, Any]] = []
    if required_reviews < 1:
        findings.append({"issue": "no required pull request reviews"})
    if force_pushes_allowed:
        findings.append({"issue": "force pushes allowed"})
    if not status_checks:
        findings.append({"issue": "status checks not required"})
    if findings:
        return CheckOutcome(
            result=FAIL,
            summary=f'Branch protection on "{branch}" is incomplete ({len(findings)} issue(s)).',
            findings=findings,
            raw=raw,
        )
    return CheckOutcome(result=PASS, summary=f'Branch "{branch}" is protected.', raw=raw)


@register("commit_signing")
async def _commit_signing(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    repo = ctx.require_repo()
    commits = await source.recent_commits(repo["full_name"])
    if not commits:
        return CheckOutcome(result=FAIL, summary="No commits available to verify signatures.")
    verified = sum(
        1 for commit in commits if (((commit.get("commit") or {}).get("verification") or {}).get("verified"))
    )
    total = len(commits)
    raw = {"verified": verified, "total": total}
    summary = f"{verified}/{total} recent commits ({_percent(verified, total)}%) are signed."
    if verified * 10 >= total * 8:
        return CheckOutcome(result=PASS, summary=summary, raw=raw)
    return CheckOutcome(
        result=FAIL,
        summary=summary,
        findings=[
            {"sha": commit.get("sha")}
            for commit in commits
            if not (((commit.get("commit") or {}).get("verification") or {}).get("verified"))
        ],
        raw=raw,
    )


@register("cicd_present")
async def _cicd_present(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    repo = ctx.require_repo()
    workflows = await source.workflows(repo["full_name"])
    count = int(workflows.get("total_count") or 0)
    names = sorted(workflow.get("name") or "" for workflow in workflows.get("workflows") or [])
    if count > 0:
        return CheckOutcome(result=PASS, summary=f"{count} workflow(s) configured.", raw={"workflows": names})
    return CheckOutcome(result=FAIL, summary="No CI/CD workflows configured.")


@register("collaborator_access")
async def _collaborator_access(ctx: EvaluationContext) -> CheckOutcome:
    source = ctx.require_source()
    repo = ctx.require_repo()
    collaborators = await source.collaborators(repo["full_name"])
    if collaborators is None:
        return CheckOutcome(result=WARNING, summary="Cannot read collaborators (insufficient permissions).")
    outside = sorted(c.get("login") or "" for c in collaborators if c.get("role_name") == "outside_collaborator")
    admins = sorted(c.get("login") or "" for c in collaborators if (c.get("permissions") or {}).get("admin"))
    raw = {"collaborators": len(collaborators), "admins": len(admins), "outside": len(outside)}
    if not outside and len(admins) <= 3:
        return CheckOutcome(
            result=PASS,
            summary=f"{len(collaborators)} collaborator(s), {len(admins)} admin(s), no outside collaborators.",
            raw=raw,
        )
    findings: list[dict[str, Any]] = [{"login": login, "issue": "outside collaborator"} for login in outside]
    if len(admins) > 3:
        findings.append({"issue": "too many admins", "admins": admins})
    return CheckOutcome(
        result=FAIL,
        summary=f"{len(outside)} outside collaborator(s), {len(admins)} admin(s).",
        findings=findings,
        raw=raw,
    )


@register("repo_visibility")
async def _repo_visibility(ctx: EvaluationContext) -> CheckOutcome:
    repo = ctx.require_repo()
    if repo.get("private"):
        return CheckOutcome(result=PASS, summary="Repository is private.")
    return CheckOutcome(
        result=FAIL,
        summary="Repository is publicly visible.",
        findings=[{"name": repo["full_name"], "visibility": repo.get("visibility", "public")}],
    )


def _posture_evaluator(check_name: str) -> EvaluatorFn:
    definition = CHECKS[check_name]

    async def _evaluate(ctx: EvaluationContext) -> CheckOutcome:
        if ctx.posture is None:
            raise CheckEvaluationError("device check needs a posture report")
        value = ctx.posture.get(definition.posture_field or "")
        if value is True:
            return CheckOutcome(result=PASS, summary=f"{definition.title}.", raw={definition.posture_field: True})
        return CheckOutcome(
            result=FAIL,
            summary=f"{definition.title}: not satisfied.",
            findings=[{"field": definition.posture_field, "value": value}],
            raw={definition.posture_field: value},
        )

    return _evaluate


for _name, _definition in CHECKS.items():
    if _definition.scope == "DEVICE":
        register(_name)(_posture_evaluator(_name))  # type: ignore[arg-type]
