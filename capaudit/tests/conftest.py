from __future__ import annotations

import os
import tempfile
from uuid import uuid4

# Point settings at a throwaway sqlite file before any capaudit module builds the engine.
_DB_PATH = os.path.join(tempfile.gettempdir(), f"capaudit-test-{uuid4().hex}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["API_ADMIN_TOKEN"] = "test-admin-token"
os.environ["AUTH_ENABLED"] = "true"
os.environ["AUDIT_EVENTS_ENABLED"] = "true"

import pytest

from capaudit.domain.models import Base
from capaudit.persistence.db import engine


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Fresh schema per test keeps findings and scan runs isolated.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose so pooled connections never cross event loops.
    await engine.dispose()


def pytest_sessionfinish(session, exitstatus) -> None:
    if os.path.exists(_DB_PATH):
        os.remove(_DB_PATH)
