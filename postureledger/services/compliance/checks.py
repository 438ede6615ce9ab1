from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


Level = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
CheckScope = Literal["ORGANIZATION", "REPO", "DEVICE"]
VerdictResult = Literal["Pass", "Fail", "Warning"]

PASS: VerdictResult = "Pass"
FAIL: VerdictResult = "Fail"
WARNING: VerdictResult = "Warning"

CheckName = Literal[
    "vulnerabilities_critical",
    "vulnerabilities_high",
    "vulnerabilities_medium",
    "vulnerabilities_low",
    "accounts_associated",
    "members_mapped",
    "accounts_deprovisioned",
    "mfa_enforced",
    "changes_approved",
    "changes_reviewed",
    "author_not_reviewer",
    "vcs_present",
    "repos_private",
    "branch_protection",
    "commit_signing",
    "cicd_present",
    "collaborator_access",
    "repo_visibility",
    "disk_encryption",
    "screen_lock",
    "firewall",
    "system_integrity",
    "auto_update",
]

LEVEL_VALUE: dict[str, int] = {"LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


def risk_score(impact: str, likelihood: str) -> int:
    return LEVEL_VALUE[impact] * LEVEL_VALUE[likelihood]


@dataclass(frozen=True)
class CheckDefinition:
    """A named rule: what it is evaluated against and what failing it costs."""

    name: CheckName
    title: str
    scope: CheckScope
    iso_refs: tuple[str, ...]
    impact: Level
    likelihood: Level
    risk_title: str
    risk_description: str
    # Device checks read one boolean off the posture report.
    posture_field: str | None = None

    def render_risk_title(self, subject_name: str) -> str:
        return self.risk_title.format(subject=subject_name)

    def render_risk_description(self, subject_name: str) -> str:
        return self.risk_description.format(subject=subject_name)

    @property
    def score(self) -> int:
        return risk_score(self.impact, self.likelihood)


def _vulnerability_check(severity: str, impact: Level, likelihood: Level) -> CheckDefinition:
    label = severity.capitalize()
    return CheckDefinition(
        name=f"vulnerabilities_{severity}",  # type: ignore[arg-type]
        title=f"{label} vulnerabilities identified in packages are addressed (GitHub Repo)",
        scope="ORGANIZATION",
        iso_refs=("A.8.8",),
        impact=impact,
        likelihood=likelihood,
        risk_title=f"Open {severity} severity vulnerabilities in {{subject}}",
        risk_description=(
            f"Repositories in {{subject}} have open {severity} severity dependency alerts that have not been remediated."
        ),
    )


_DEFINITIONS: tuple[CheckDefinition, ...] = (
    _vulnerability_check("critical", "CRITICAL", "HIGH"),
    _vulnerability_check("high", "HIGH", "MEDIUM"),
    _vulnerability_check("medium", "MEDIUM", "MEDIUM"),
    _vulnerability_check("low", "LOW", "LOW"),
    CheckDefinition(
        name="accounts_associated",
        title="GitHub accounts associated with users",
        scope="ORGANIZATION",
        iso_refs=("A.5.16",),
        impact="MEDIUM",
        likelihood="LOW",
        risk_title="GitHub accounts not associated with users in {subject}",
        risk_description="No GitHub organization members of {subject} could be associated with internal users.",
    ),
    CheckDefinition(
        name="members_mapped",
        title="All GitHub members must map to ISMS users",
        scope="ORGANIZATION",
        iso_refs=("A.5.16", "A.5.18"),
        impact="MEDIUM",
        likelihood="MEDIUM",
        risk_title="Unmapped GitHub members in {subject}",
        risk_description="Members of {subject} have no linked internal identity, so their access cannot be reviewed.",
    ),
    CheckDefinition(
        name="accounts_deprovisioned",
        title="GitHub accounts deprovisioned when personnel leave",
        scope="ORGANIZATION",
        iso_refs=("A.5.18", "A.6.5"),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="Stale GitHub access in {subject}",
        risk_description="Members of {subject} do not match an active internal user and may belong to departed personnel.",
    ),
    CheckDefinition(
        name="mfa_enforced",
        title="MFA on GitHub",
        scope="ORGANIZATION",
        iso_refs=("A.8.5",),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="MFA not enforced on {subject}",
        risk_description="{subject} does not require two-factor authentication for its members.",
    ),
    CheckDefinition(
        name="changes_approved",
        title="GitHub code changes were approved or provided justification for exception",
        scope="ORGANIZATION",
        iso_refs=("A.8.32",),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="Unapproved code changes in {subject}",
        risk_description="Recently closed pull requests in {subject} were merged without an approving review.",
    ),
    CheckDefinition(
        name="changes_reviewed",
        title="Application changes reviewed",
        scope="ORGANIZATION",
        iso_refs=("A.8.32", "A.8.28"),
        impact="MEDIUM",
        likelihood="MEDIUM",
        risk_title="Insufficient change review coverage in {subject}",
        risk_description="Too few recently closed pull requests in {subject} received any review.",
    ),
    CheckDefinition(
        name="author_not_reviewer",
        title="Author is not the reviewer of pull requests",
        scope="ORGANIZATION",
        iso_refs=("A.5.3", "A.8.32"),
        impact="HIGH",
        likelihood="LOW",
        risk_title="Self-approved pull requests in {subject}",
        risk_description="Pull requests in {subject} were approved by their own authors, bypassing segregation of duties.",
    ),
    CheckDefinition(
        name="vcs_present",
        title="Company has a version control system",
        scope="ORGANIZATION",
        iso_refs=("A.8.4",),
        impact="MEDIUM",
        likelihood="LOW",
        risk_title="No active repositories in {subject}",
        risk_description="{subject} has no active repositories under version control.",
    ),
    CheckDefinition(
        name="repos_private",
        title="GitHub repository visibility has been set to private",
        scope="ORGANIZATION",
        iso_refs=("A.5.15", "A.8.4"),
        impact="HIGH",
        likelihood="HIGH",
        risk_title="Public repositories in {subject}",
        risk_description="{subject} exposes repositories publicly, potentially leaking proprietary code or credentials.",
    ),
    CheckDefinition(
        name="branch_protection",
        title="Default branch is protected",
        scope="REPO",
        iso_refs=("A.8.32",),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="Branch protection not enabled on {subject}",
        risk_description=(
            "Repository {subject} has no required pull request reviews or status checks on the default branch, "
            "allowing unreviewed code to reach production."
        ),
    ),
    CheckDefinition(
        name="commit_signing",
        title="Commits are signed",
        scope="REPO",
        iso_refs=("A.8.24",),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="Commit signing not enforced on {subject}",
        risk_description=(
            "Less than 80% of recent commits in {subject} are cryptographically signed, "
            "making it impossible to verify code authorship."
        ),
    ),
    CheckDefinition(
        name="cicd_present",
        title="CI/CD pipeline configured",
        scope="REPO",
        iso_refs=("A.8.25",),
        impact="MEDIUM",
        likelihood="MEDIUM",
        risk_title="No CI/CD pipeline detected in {subject}",
        risk_description=(
            "Repository {subject} has no GitHub Actions workflows, "
            "indicating a lack of automated security testing in the SDLC."
        ),
    ),
    CheckDefinition(
        name="collaborator_access",
        title="Collaborator access follows least privilege",
        scope="REPO",
        iso_refs=("A.5.15", "A.5.18"),
        impact="HIGH",
        likelihood="HIGH",
        risk_title="Excessive collaborator access on {subject}",
        risk_description=(
            "Repository {subject} has external collaborators or more than 3 admins, "
            "violating least-privilege access control principles."
        ),
    ),
    CheckDefinition(
        name="repo_visibility",
        title="Repository is private",
        scope="REPO",
        iso_refs=("A.5.15",),
        impact="HIGH",
        likelihood="HIGH",
        risk_title="Public repository exposure: {subject}",
        risk_description=(
            "Repository {subject} is publicly visible, "
            "potentially exposing proprietary code, credentials, or internal architecture."
        ),
    ),
    CheckDefinition(
        name="disk_encryption",
        title="Full-disk encryption enabled",
        scope="DEVICE",
        iso_refs=("A.8.24",),
        impact="HIGH",
        likelihood="MEDIUM",
        risk_title="Endpoint without disk encryption: {subject}",
        risk_description=(
            "A managed device does not have full-disk encryption enabled. "
            "This exposes data to physical theft.\n\nDevice: {subject}"
        ),
        posture_field="disk_encryption_enabled",
    ),
    CheckDefinition(
        name="screen_lock",
        title="Automatic screen lock enabled",
        scope="DEVICE",
        iso_refs=("A.5.15",),
        impact="MEDIUM",
        likelihood="MEDIUM",
        risk_title="Device without automatic screen lock: {subject}",
        risk_description=(
            "A managed device does not require a password after screensaver activation, "
            "violating access control policy.\n\nDevice: {subject}"
        ),
        posture_field="screen_lock_enabled",
    ),
    CheckDefinition(
        name="firewall",
        title="Host firewall enabled",
        scope="DEVICE",
        iso_refs=("A.8.20",),
        impact="MEDIUM",
        likelihood="LOW",
        risk_title="Endpoint firewall disabled: {subject}",
        risk_description=(
            "A managed device is running without an active host-based firewall, "
            "increasing network attack surface.\n\nDevice: {subject}"
        ),
        posture_field="firewall_enabled",
    ),
    CheckDefinition(
        name="system_integrity",
        title="System integrity protection enabled",
        scope="DEVICE",
        iso_refs=("A.8.7",),
        impact="HIGH",
        likelihood="LOW",
        risk_title="System Integrity Protection disabled on endpoint: {subject}",
        risk_description=(
            "System integrity protection has been disabled on a managed device, "
            "reducing protection against rootkits and malware.\n\nDevice: {subject}"
        ),
        posture_field="system_integrity_enabled",
    ),
    CheckDefinition(
        name="auto_update",
        title="Automatic OS updates enabled",
        scope="DEVICE",
        iso_refs=("A.8.8",),
        impact="MEDIUM",
        likelihood="HIGH",
        risk_title="Automatic OS updates disabled on endpoint: {subject}",
        risk_description=(
            "A managed device has automatic software updates turned off, "
            "leaving it potentially unpatched.\n\nDevice: {subject}"
        ),
        posture_field="auto_update_enabled",
    ),
)

CHECKS: dict[str, CheckDefinition] = {definition.name: definition for definition in _DEFINITIONS}


def get_check(name: str) -> CheckDefinition | None:
    return CHECKS.get(name)


def checks_for_scope(scope: CheckScope) -> list[CheckDefinition]:
    return [definition for definition in _DEFINITIONS if definition.scope == scope]


# ISO 27001:2022 Annex A controls the checks above contribute to.
CONTROL_CATALOG: dict[str, str] = {
    "A.5.3": "Segregation of duties",
    "A.5.15": "Access control",
    "A.5.16": "Identity management",
    "A.5.18": "Access rights",
    "A.6.5": "Responsibilities after termination or change of employment",
    "A.8.4": "Access to source code",
    "A.8.5": "Secure authentication",
    "A.8.7": "Protection against malware",
    "A.8.8": "Management of technical vulnerabilities",
    "A.8.20": "Networks security",
    "A.8.24": "Use of cryptography",
    "A.8.25": "Secure development life cycle",
    "A.8.28": "Secure coding",
    "A.8.32": "Change management",
}
