from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point settings at a throwaway SQLite file before any grantflow module builds the engine.
_TEST_DB = Path(tempfile.gettempdir()) / f"grantflow_test_{os.getpid()}.db"
os.environ["DATABASE_URL"] = os.environ.get("GRANTFLOW_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB}")
os.environ.setdefault("NOTIFY_EMAIL_RELAY_URL", "noop://email")

import pytest
from httpx import ASGITransport, AsyncClient

from grantflow.apps.api.main import create_app
from grantflow.core.config import get_settings
from grantflow.domain.models import Base
from grantflow.persistence.db import SessionLocal, engine
from grantflow.services.approvals.policies import get_policy_cache
from grantflow.services.approvals.providers import default_providers


@pytest.fixture
async def db_schema():
    # Rebuild the schema per test so state never leaks between cases.
    get_settings.cache_clear()
    get_policy_cache.cache_clear()
    default_providers.cache_clear()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
async def session(db_schema):
    async with SessionLocal() as db:
        yield db


@pytest.fixture
async def client(db_schema):
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
