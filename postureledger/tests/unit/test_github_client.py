from __future__ import annotations

import httpx
import pytest

from postureledger.core.config import get_settings
from postureledger.core.errors import (
    IntegrationUnavailableError,
    SourceAuthError,
    SourcePermissionDenied,
    SourceUnavailableError,
)
from postureledger.providers.source_hosting.github import GitHubClient
from postureledger.services.resilience import CircuitBreaker, CircuitBreakerConfig
from postureledger.services.telemetry import counters_snapshot, external_latency_by_integration


def _client(handler, *, breaker: CircuitBreaker | None = None) -> GitHubClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.github.com")
    breaker = breaker or CircuitBreaker(
        "source.github",
        config=CircuitBreakerConfig(failure_threshold=5, open_seconds=30, half_open_trials=1),
    )
    return GitHubClient("gho_test", http_client=http_client, breaker=breaker)


@pytest.fixture
def fast_retries(monkeypatch) -> None:
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_paginates_until_short_page(monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_PAGE_SIZE", "2")
    get_settings.cache_clear()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["page"])
        assert request.headers["Authorization"] == "Bearer gho_test"
        page = int(request.url.params["page"])
        repos = {1: [{"full_name": "acme/a"}, {"full_name": "acme/b"}], 2: [{"full_name": "acme/c"}]}
        return httpx.Response(200, json=repos.get(page, []))

    async with _client(handler) as client:
        repos = await client.list_repos()

    assert [repo["full_name"] for repo in repos] == ["acme/a", "acme/b", "acme/c"]
    assert seen == ["1", "2"]


@pytest.mark.asyncio
async def test_status_codes_map_to_typed_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(401, json={"message": "Bad credentials"})
        if path.endswith("/protection"):
            return httpx.Response(404, json={"message": "Branch not protected"})
        if path.startswith("/orgs/"):
            return httpx.Response(403, headers={"x-ratelimit-remaining": "10"}, json={"message": "Forbidden"})
        return httpx.Response(403, headers={"x-ratelimit-remaining": "0"}, json={"message": "rate limited"})

    async with _client(handler) as client:
        with pytest.raises(SourceAuthError):
            await client.get_authenticated_user()
        with pytest.raises(SourcePermissionDenied) as missing:
            await client.get_branch_protection("acme/api", "main")
        with pytest.raises(SourcePermissionDenied):
            await client.get_org("acme")
        with pytest.raises(SourceUnavailableError):
            await client.list_workflows("acme/api")

    assert missing.value.status_code == 404
    assert counters_snapshot()["github_rate_limited_total"] == 1


@pytest.mark.asyncio
async def test_server_errors_are_retried_then_raised(fast_retries) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(502, json={"message": "bad gateway"})

    async with _client(handler) as client:
        with pytest.raises(SourceUnavailableError) as excinfo:
            await client.list_workflows("acme/api")

    assert excinfo.value.status_code == 502
    assert calls["count"] == 2
    stats = external_latency_by_integration(60)["source.github"]
    assert stats["failures"] == 1


@pytest.mark.asyncio
async def test_repeated_outages_open_the_breaker(fast_retries) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    breaker = CircuitBreaker(
        "source.github",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=60, half_open_trials=1),
    )
    async with _client(handler, breaker=breaker) as client:
        for _ in range(2):
            with pytest.raises(SourceUnavailableError):
                await client.list_repos()
        with pytest.raises(IntegrationUnavailableError):
            await client.list_repos()

    # The open breaker short-circuits before any request is sent.
    assert calls["count"] == 4


@pytest.mark.asyncio
async def test_forbidden_answers_do_not_trip_the_breaker() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    breaker = CircuitBreaker(
        "source.github",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )
    async with _client(handler, breaker=breaker) as client:
        for _ in range(3):
            with pytest.raises(SourcePermissionDenied):
                await client.list_collaborators("acme/api")
