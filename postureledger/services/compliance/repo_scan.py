from __future__ import annotations

from typing import Any, Literal


Criticality = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]

ORGANIZATION_SUBJECT_NAME = "GitHub Organisation"


def derive_criticality(repo: dict[str, Any]) -> Criticality:
    if repo.get("archived"):
        return "LOW"
    name = (repo.get("name") or "").lower()
    if any(token in name for token in ("infra", "terraform", "k8s")):
        return "CRITICAL"
    if not repo.get("private"):
        return "HIGH"
    if any(token in name for token in ("backend", "api", "auth", "server")):
        return "HIGH"
    if any(token in name for token in ("test", "demo", "example")):
        return "LOW"
    return "MEDIUM"


def describe_repo(repo: dict[str, Any]) -> str:
    parts = [repo.get("description") or f"GitHub repository {repo.get('full_name')}"]
    if repo.get("language"):
        parts.append(f"Language: {repo['language']}")
    parts.append("Visibility: private" if repo.get("private") else "Visibility: public")
    if repo.get("archived"):
        parts.append("Archived")
    return " | ".join(parts)


def repo_metadata(repo: dict[str, Any]) -> dict[str, Any]:
    return {
        "github_id": repo.get("id"),
        "full_name": repo.get("full_name"),
        "default_branch": repo.get("default_branch"),
        "private": bool(repo.get("private")),
        "archived": bool(repo.get("archived")),
        "html_url": repo.get("html_url"),
    }
