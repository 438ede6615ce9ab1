from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from postureledger.core.errors import SourcePermissionDenied
from postureledger.providers.source_hosting.base import SourceHostingClient
from postureledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class NoData:
    """Negative answer cached for a sub-resource the account cannot read."""

    status_code: int | None = None


@dataclass
class CacheEntry:
    key: str
    value: Any
    fetched_at: datetime
    error: BaseException | None = None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class RunCache:
    """Memoized fetch results for a single run.

    The first caller for a key starts the load; callers arriving while it is
    in flight await the same task. Results and failures are both kept for the
    rest of the run, so every key hits the network at most once.
    """

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id or uuid4().hex
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[CacheEntry]] = {}
        self.loads = 0
        self.shared_waits = 0

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def fetch(self, key: str, loader: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is not None:
            return entry.unwrap()
        pending = self._inflight.get(key)
        if pending is None:
            self.loads += 1
            pending = asyncio.ensure_future(self._load(key, loader))
            self._inflight[key] = pending
        else:
            self.shared_waits += 1
        # Shield so one cancelled caller does not cancel the load for the others.
        entry = await asyncio.shield(pending)
        return entry.unwrap()

    async def _load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> CacheEntry:
        try:
            value = await loader()
        except Exception as exc:  # noqa: BLE001 - cached and re-raised to every requester
            entry = CacheEntry(key=key, value=None, fetched_at=datetime.now(timezone.utc), error=exc)
        else:
            entry = CacheEntry(key=key, value=value, fetched_at=datetime.now(timezone.utc))
        self._entries[key] = entry
        self._inflight.pop(key, None)
        return entry

    async def close(self) -> None:
        pending = list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class CachedDataSource:
    """Typed accessors over a source-hosting client, memoized per run."""

    client: SourceHostingClient
    cache: RunCache
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    review_window_days: int = 30
    commit_sample_size: int = 20
    max_concurrency: int = 8

    def __post_init__(self) -> None:
        self._semaphore = asyncio.Semaphore(max(1, self.max_concurrency))

    async def fetch(self, key: str, loader: Callable[[], Awaitable[T]], *, negative: Any = None) -> T:
        # 403/404 on a sub-resource becomes a cached negative result, not a run failure.
        async def _guarded() -> Any:
            async with self._semaphore:
                try:
                    return await loader()
                except SourcePermissionDenied as exc:
                    increment_counter("source_permission_denied_total")
                    logger.info("source_no_data key=%s status=%s", key, exc.status_code)
                    return negative if negative is not None else NoData(exc.status_code)

        return await self.cache.fetch(key, _guarded)

    async def repos(self) -> list[dict[str, Any]]:
        repos = await self.fetch("repos", self.client.list_repos, negative=[])
        # Stable ordering keeps findings, and so evidence hashes, deterministic.
        return sorted(repos, key=lambda repo: repo.get("full_name", ""))

    async def primary_org(self) -> str | None:
        orgs = await self.fetch("user_orgs", self.client.list_user_orgs, negative=[])
        if not orgs:
            return None
        return orgs[0].get("login")

    async def org_members(self, org: str) -> list[dict[str, Any]]:
        members = await self.fetch(f"org_members:{org}", lambda: self.client.list_org_members(org), negative=[])
        return sorted(members, key=lambda member: (member.get("login") or "").lower())

    async def org_mfa_required(self, org: str) -> bool | None:
        details = await self.fetch(f"org_details:{org}", lambda: self.client.get_org(org))
        if isinstance(details, NoData):
            return None
        return details.get("two_factor_requirement_enabled")

    async def vulnerability_alerts(self, full_name: str) -> list[dict[str, Any]]:
        return await self.fetch(
            f"alerts:{full_name}",
            lambda: self.client.list_vulnerability_alerts(full_name),
            negative=[],
        )

    async def recent_pulls(self, full_name: str) -> list[dict[str, Any]]:
        pulls = await self.fetch(f"pulls:{full_name}", lambda: self.client.list_closed_pulls(full_name), negative=[])
        cutoff = self.now - timedelta(days=self.review_window_days)
        recent = []
        for pull in pulls:
            updated_at = _parse_ts(pull.get("updated_at"))
            if updated_at is not None and updated_at >= cutoff:
                recent.append(pull)
        return sorted(recent, key=lambda pull: pull.get("number", 0))

    async def pull_reviews(self, full_name: str, number: int) -> list[dict[str, Any]] | None:
        reviews = await self.fetch(
            f"reviews:{full_name}#{number}",
            lambda: self.client.list_pull_reviews(full_name, number),
        )
        return None if isinstance(reviews, NoData) else reviews

    async def branch_protection(self, full_name: str, branch: str) -> dict[str, Any] | NoData:
        return await self.fetch(
            f"protection:{full_name}@{branch}",
            lambda: self.client.get_branch_protection(full_name, branch),
        )

    async def recent_commits(self, full_name: str) -> list[dict[str, Any]]:
        return await self.fetch(
            f"commits:{full_name}",
            lambda: self.client.list_commits(full_name, limit=self.commit_sample_size),
            negative=[],
        )

    async def workflows(self, full_name: str) -> dict[str, Any]:
        return await self.fetch(
            f"workflows:{full_name}",
            lambda: self.client.list_workflows(full_name),
            negative={"total_count": 0, "workflows": []},
        )

    async def collaborators(self, full_name: str) -> list[dict[str, Any]] | None:
        collaborators = await self.fetch(
            f"collaborators:{full_name}",
            lambda: self.client.list_collaborators(full_name),
        )
        return None if isinstance(collaborators, NoData) else collaborators
