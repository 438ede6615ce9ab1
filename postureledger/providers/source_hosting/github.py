from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from postureledger.core.config import get_settings
from postureledger.core.errors import (
    SourceAuthError,
    SourceHostingError,
    SourcePermissionDenied,
    SourceUnavailableError,
)
from postureledger.services.audit import record_system_event
from postureledger.services.resilience import CircuitBreaker, get_breaker_redis, retry_async
from postureledger.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "source.github"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class GitHubClient:
    """GitHub REST client scoped to one integration token."""

    def __init__(
        self,
        token: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._token = token
        self._client = http_client
        self._owns_client = http_client is None
        self._breaker = breaker

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.github_api_base_url, timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is not None:
            return self._breaker
        redis = await get_breaker_redis()

        async def _on_transition(name: str, state: str) -> None:
            record_system_event(
                event_type=f"system.circuit_breaker.{state}",
                metadata={"integration": name},
            )

        self._breaker = CircuitBreaker(_INTEGRATION, redis=redis, on_transition=_on_transition)
        return self._breaker

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": self._settings.github_api_version,
        }

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        client = self._get_client()
        breaker = await self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.get(path, params=params, headers=self._headers())
            if response.status_code >= 500:
                raise SourceUnavailableError(
                    f"GitHub {path} returned {response.status_code}",
                    status_code=response.status_code,
                )
            return response

        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError, SourceUnavailableError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=_INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("github_request_failed path=%s", path, exc_info=exc)
            if isinstance(exc, SourceUnavailableError):
                raise
            raise SourceUnavailableError(f"GitHub {path} request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        status = response.status_code
        # 4xx answers mean the API is healthy; only the caller's access is limited.
        await breaker.record_success()
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=status < 400)
        if status == 401:
            raise SourceAuthError("GitHub rejected the integration token", status_code=status)
        if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
            increment_counter("github_rate_limited_total")
            raise SourceUnavailableError(f"GitHub rate limit reached on {path}", status_code=status)
        if status in {403, 404}:
            raise SourcePermissionDenied(f"GitHub {path} returned {status}", status_code=status)
        if status >= 400:
            raise SourceHostingError(f"GitHub {path} returned {status}", status_code=status)
        return response.json()

    async def _paginate(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        # Page until a short page or the configured page cap.
        per_page = self._settings.github_page_size
        items: list[dict[str, Any]] = []
        for page in range(1, self._settings.github_max_pages + 1):
            data = await self._get(path, {**(params or {}), "per_page": per_page, "page": page})
            if not isinstance(data, list):
                break
            items.extend(data)
            if len(data) < per_page:
                break
        return items

    async def get_authenticated_user(self) -> dict[str, Any]:
        return await self._get("/user")

    async def list_user_orgs(self) -> list[dict[str, Any]]:
        return await self._paginate("/user/orgs")

    async def get_org(self, org: str) -> dict[str, Any]:
        return await self._get(f"/orgs/{org}")

    async def list_org_members(self, org: str) -> list[dict[str, Any]]:
        return await self._paginate(f"/orgs/{org}/members")

    async def list_repos(self) -> list[dict[str, Any]]:
        return await self._paginate("/user/repos", {"sort": "updated"})

    async def list_vulnerability_alerts(self, full_name: str) -> list[dict[str, Any]]:
        return await self._paginate(f"/repos/{full_name}/dependabot/alerts", {"state": "open"})

    async def list_closed_pulls(self, full_name: str) -> list[dict[str, Any]]:
        # Newest first; one page covers the review window for typical repositories.
        return await self._get(
            f"/repos/{full_name}/pulls",
            {"state": "closed", "sort": "updated", "direction": "desc", "per_page": self._settings.github_page_size},
        )

    async def list_pull_reviews(self, full_name: str, number: int) -> list[dict[str, Any]]:
        return await self._get(f"/repos/{full_name}/pulls/{number}/reviews")

    async def get_branch_protection(self, full_name: str, branch: str) -> dict[str, Any]:
        return await self._get(f"/repos/{full_name}/branches/{branch}/protection")

    async def list_commits(self, full_name: str, *, limit: int) -> list[dict[str, Any]]:
        return await self._get(f"/repos/{full_name}/commits", {"per_page": limit})

    async def list_workflows(self, full_name: str) -> dict[str, Any]:
        return await self._get(f"/repos/{full_name}/actions/workflows")

    async def list_collaborators(self, full_name: str) -> list[dict[str, Any]]:
        return await self._paginate(f"/repos/{full_name}/collaborators", {"affiliation": "all"})
