from __future__ import annotations

import os
import tempfile

# Point every database at throwaway SQLite files before settings are first cached.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="skillmesh-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/control.db")
os.environ.setdefault("SHARED_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/shared.db")
os.environ.setdefault("SCHEMA_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/schemas.db")
os.environ.setdefault("ROUTING_INVALIDATION_ENABLED", "false")
os.environ.setdefault("MIGRATION_EXECUTION_MODE", "inline")

import pytest  # noqa: E402

from skillmesh.core.config import get_settings  # noqa: E402
from skillmesh.domain.models import Base  # noqa: E402
from skillmesh.persistence.db import engine  # noqa: E402
from skillmesh.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def control_plane_tables() -> None:
    # Rebuild the control-plane tables so registry and job state never leak across tests.
    get_settings.cache_clear()
    reset_telemetry()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()
