from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Hashable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from redis.asyncio import Redis

from postureledger.core.config import get_settings
from postureledger.core.errors import IntegrationUnavailableError
from postureledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

BreakerPhase = Literal["closed", "open", "half_open"]

_PHASE_GAUGE: dict[str, float] = {"closed": 0.0, "half_open": 0.5, "open": 1.0}

_breaker_redis: Redis | None = None
_breaker_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_breaker_redis() -> Redis | None:
    """Return the Redis client that shares breaker state across replicas.

    ``None`` keeps every breaker process-local, which is what tests and
    single-node deployments use.
    """
    global _breaker_redis, _breaker_redis_loop
    settings = get_settings()
    if not settings.cb_shared_state_enabled:
        return None
    loop = asyncio.get_running_loop()
    # Clients are bound to the loop that created them.
    if _breaker_redis is None or _breaker_redis_loop is not loop:
        try:
            _breaker_redis = Redis.from_url(settings.redis_url, decode_responses=True)
        except ValueError as exc:
            logger.warning("breaker_redis_unavailable url_invalid=%s", exc)
            return None
        _breaker_redis_loop = loop
    return _breaker_redis


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_for(self, attempt: int) -> float:
        # Exponential backoff with +/-50% jitter, in seconds.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    """Run ``func`` with a per-attempt timeout, retrying transient failures."""
    policy = policy or RetryPolicy.from_settings()
    retryable = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-transient errors propagate unchanged
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_for(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerState:
    phase: BreakerPhase = "closed"
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0


class CircuitBreaker:
    """Per-integration breaker guarding outbound calls to a source host.

    Permission and auth answers are not failures; only calls that exhausted
    their retries are recorded. With Redis configured the state is shared
    by every API replica and worker.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        self._clock = time_source or time.monotonic
        self._on_transition = on_transition
        self._state = BreakerState()

    @property
    def _redis_key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def _read(self) -> BreakerState:
        if self._redis is None:
            return self._state
        raw = await self._redis.get(self._redis_key)
        return BreakerState(**json.loads(raw)) if raw else BreakerState()

    async def _write(self, state: BreakerState) -> None:
        self._state = state
        if self._redis is not None:
            ttl = max(self._config.open_seconds * 4, 60)
            await self._redis.set(self._redis_key, json.dumps(asdict(state)), ex=ttl)

    async def _move(self, state: BreakerState, phase: BreakerPhase) -> BreakerState:
        if state.phase == phase:
            return state
        logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, state.phase, phase)
        increment_counter(f"circuit_breaker_transition_total.{self.name}.{phase}")
        set_gauge(f"circuit_breaker_state.{self.name}", _PHASE_GAUGE[phase])
        if self._on_transition is not None:
            await self._on_transition(self.name, phase)
        return BreakerState(phase=phase, opened_at=self._clock() if phase == "open" else None)

    async def before_call(self) -> BreakerState:
        state = await self._read()
        if state.phase == "closed":
            return state
        if state.phase == "open":
            elapsed = self._clock() - (state.opened_at or 0.0)
            if elapsed < self._config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            state = await self._move(state, "half_open")
        if state.trials >= self._config.half_open_trials:
            raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
        state = replace(state, trials=state.trials + 1)
        await self._write(state)
        return state

    async def record_success(self) -> None:
        state = await self._read()
        await self._write(await self._move(state, "closed") if state.phase != "closed" else BreakerState())

    async def record_failure(self) -> None:
        state = await self._read()
        failures = state.failures + 1
        if state.phase == "half_open" or failures >= self._config.failure_threshold:
            state = await self._move(state, "open")
        else:
            state = replace(state, failures=failures)
        await self._write(state)


class BulkheadLease:
    def __init__(self, bulkhead: Bulkhead) -> None:
        self._bulkhead = bulkhead
        self.released = False

    def release(self) -> None:
        # Idempotent so error paths can release unconditionally.
        if not self.released:
            self.released = True
            self._bulkhead._in_use -= 1


class Bulkhead:
    """Non-blocking concurrency cap; ``acquire`` answers ``None`` when full."""

    def __init__(self, name: str, limit: int) -> None:
        self.name = name
        self.limit = max(1, limit)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    async def acquire(self) -> BulkheadLease | None:
        if self._in_use >= self.limit:
            increment_counter(f"bulkhead_rejected_total.{self.name}")
            return None
        self._in_use += 1
        return BulkheadLease(self)


_scan_bulkhead: Bulkhead | None = None


def get_scan_bulkhead() -> Bulkhead:
    global _scan_bulkhead
    if _scan_bulkhead is None:
        _scan_bulkhead = Bulkhead("scan", get_settings().scan_max_concurrency)
    return _scan_bulkhead


def reset_bulkheads() -> None:
    # Tests change SCAN_MAX_CONCURRENCY between cases.
    global _scan_bulkhead
    _scan_bulkhead = None


class KeyedLocks:
    """Per-key asyncio locks; writers sharing a key run one at a time.

    Entries are dropped once no task holds or awaits the lock, so the
    registry stays bounded by the number of keys currently in use.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
