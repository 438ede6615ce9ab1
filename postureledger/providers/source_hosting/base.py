from __future__ import annotations

from typing import Any, Protocol


class SourceHostingClient(Protocol):
    """Read-only view of a source-hosting account.

    Implementations raise ``SourcePermissionDenied`` for 403/404 responses,
    ``SourceAuthError`` for rejected credentials and ``SourceUnavailableError``
    once transient failures exhaust their retries.
    """

    async def get_authenticated_user(self) -> dict[str, Any]: ...

    async def list_user_orgs(self) -> list[dict[str, Any]]: ...

    async def get_org(self, org: str) -> dict[str, Any]: ...

    async def list_org_members(self, org: str) -> list[dict[str, Any]]: ...

    async def list_repos(self) -> list[dict[str, Any]]: ...

    async def list_vulnerability_alerts(self, full_name: str) -> list[dict[str, Any]]: ...

    async def list_closed_pulls(self, full_name: str) -> list[dict[str, Any]]: ...

    async def list_pull_reviews(self, full_name: str, number: int) -> list[dict[str, Any]]: ...

    async def get_branch_protection(self, full_name: str, branch: str) -> dict[str, Any]: ...

    async def list_commits(self, full_name: str, *, limit: int) -> list[dict[str, Any]]: ...

    async def list_workflows(self, full_name: str) -> dict[str, Any]: ...

    async def list_collaborators(self, full_name: str) -> list[dict[str, Any]]: ...
