from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any chatrelay module builds the engine.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="chatrelay-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'chatrelay.db')}"
os.environ["REDIS_ENABLED"] = "false"
os.environ.pop("ADMIN_API_TOKEN", None)
os.environ.pop("INGEST_TOKEN", None)

import pytest

from chatrelay.core.config import get_settings
from chatrelay.domain.models import Base
from chatrelay.persistence.db import engine
from chatrelay.services.matcher import reset_rule_cache
from chatrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def fresh_database() -> None:
    # Rebuild the schema per test so queue, breaker and alert state never leak across tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_rule_cache()
    reset_telemetry()
    yield
    reset_rule_cache()
    get_settings.cache_clear()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
