from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Settings are read when the engine module is imported; point them at a throwaway database first.
_DB_DIR = Path(tempfile.mkdtemp(prefix="postureledger-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'postureledger.db'}")
os.environ["CB_SHARED_STATE_ENABLED"] = "false"
os.environ["SCAN_EXECUTION_MODE"] = "background"

import pytest  # noqa: E402

from postureledger.core.config import get_settings  # noqa: E402
from postureledger.domain.models import Base  # noqa: E402
from postureledger.persistence.db import engine  # noqa: E402
from postureledger.services.background import get_background_tasks  # noqa: E402
from postureledger.services.resilience import reset_bulkheads  # noqa: E402
from postureledger.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables and clean process-level registries.
    get_settings.cache_clear()
    reset_telemetry()
    reset_bulkheads()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    background = get_background_tasks()
    await background.drain(timeout=5)
    await background.cancel_all()
    background.failures.clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()
    reset_bulkheads()
