from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from postureledger.core.errors import SourceAuthError, SourceUnavailableError
from postureledger.services.compliance.data_source import CachedDataSource, NoData, RunCache
from postureledger.tests.utils.source import FakeSourceClient, make_repo


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_concurrent_fetches_share_one_load() -> None:
    cache = RunCache()
    calls = {"count": 0}
    release = asyncio.Event()

    async def loader() -> list[str]:
        calls["count"] += 1
        await release.wait()
        return ["acme/api"]

    tasks = [asyncio.create_task(cache.fetch("repos", loader)) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls["count"] == 1
    assert cache.loads == 1
    assert cache.shared_waits == 4
    assert results == [["acme/api"]] * 5
    assert "repos" in cache


@pytest.mark.asyncio
async def test_failures_are_cached_for_the_run() -> None:
    cache = RunCache()
    calls = {"count": 0}

    async def loader() -> None:
        calls["count"] += 1
        raise SourceUnavailableError("GitHub /user/repos returned 502", status_code=502)

    for _ in range(3):
        with pytest.raises(SourceUnavailableError):
            await cache.fetch("repos", loader)
    assert calls["count"] == 1
    assert cache.entry("repos").error is not None


@pytest.mark.asyncio
async def test_denied_sub_resource_becomes_cached_negative() -> None:
    client = FakeSourceClient(repos=[make_repo("acme/api")], denied={"list_collaborators", "get_org"})
    source = CachedDataSource(client=client, cache=RunCache(), now=NOW)

    assert await source.collaborators("acme/api") is None
    assert await source.collaborators("acme/api") is None
    assert await source.org_mfa_required("acme") is None
    assert client.calls["list_collaborators"] == 1
    assert isinstance(source.cache.entry("org_details:acme").value, NoData)


@pytest.mark.asyncio
async def test_auth_errors_propagate() -> None:
    client = FakeSourceClient(fail_with=SourceAuthError("bad token", status_code=401))
    source = CachedDataSource(client=client, cache=RunCache(), now=NOW)
    with pytest.raises(SourceAuthError):
        await source.repos()


@pytest.mark.asyncio
async def test_each_sub_resource_fetched_once_per_run() -> None:
    repos = [make_repo("acme/web"), make_repo("acme/api")]
    client = FakeSourceClient(repos=repos)
    source = CachedDataSource(client=client, cache=RunCache(), now=NOW)

    await asyncio.gather(*(source.repos() for _ in range(10)))
    names = [repo["full_name"] for repo in await source.repos()]
    await asyncio.gather(*(source.vulnerability_alerts(name) for name in names for _ in range(3)))

    assert names == ["acme/api", "acme/web"]
    assert client.calls["list_repos"] == 1
    assert client.calls["list_vulnerability_alerts"] == 2


@pytest.mark.asyncio
async def test_recent_pulls_respect_review_window() -> None:
    pulls = {
        "acme/api": [
            {"number": 2, "updated_at": "2026-09-30T10:00:00Z", "merged_at": "2026-09-30T10:00:00Z"},
            {"number": 1, "updated_at": "2026-07-01T10:00:00Z", "merged_at": "2026-07-01T10:00:00Z"},
        ]
    }
    client = FakeSourceClient(pulls=pulls)
    source = CachedDataSource(client=client, cache=RunCache(), now=NOW, review_window_days=30)
    recent = await source.recent_pulls("acme/api")
    assert [pull["number"] for pull in recent] == [2]
