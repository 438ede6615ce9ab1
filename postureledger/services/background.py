from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Coroutine, Deque

from postureledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackgroundFailure:
    label: str
    error: BaseException
    failed_at: datetime


class BackgroundTasks:
    """Registry for work scheduled off the caller's critical path.

    Tasks are held until they finish so they are not garbage collected
    mid-flight. Failures are logged and kept on ``failures`` for
    inspection; they never propagate to whoever spawned the task.
    """

    def __init__(self, *, max_failures: int = 200) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures: Deque[BackgroundFailure] = deque(maxlen=max_failures)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, label: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        label = task.get_name()
        logger.error("background_task_failed label=%s", label, exc_info=exc)
        increment_counter("background_task_failures_total")
        self.failures.append(BackgroundFailure(label=label, error=exc, failed_at=datetime.now(timezone.utc)))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        # Wait for everything currently scheduled, including tasks spawned while draining.
        while self._tasks:
            current = list(self._tasks)
            await asyncio.wait(current, timeout=timeout)
            if timeout is not None:
                break

    async def cancel_all(self) -> None:
        current = list(self._tasks)
        for task in current:
            task.cancel()
        if current:
            await asyncio.gather(*current, return_exceptions=True)


_background: BackgroundTasks | None = None


def get_background_tasks() -> BackgroundTasks:
    global _background
    if _background is None:
        _background = BackgroundTasks()
    return _background
