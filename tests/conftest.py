"""Pytest configuration and fixtures for test suite.

This is the root-level conftest.py that provides:
- Environment variable defaults (set before any ``src`` import so the
  module-level settings objects pick them up)
- An in-memory SQLite database per test
- A seeded taxonomy store
"""
import os
import tempfile

_ARTIFACT_DIR = tempfile.mkdtemp(prefix="taxonomy-loop-tests-")

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REDIS_PASSWORD", "test_password")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("LLM_BACKEND", "mock")
os.environ.setdefault("LLM_RETRY_MAX_ATTEMPTS", "1")
os.environ.setdefault("OUTPUT_DIR", os.path.join(_ARTIFACT_DIR, "outputs"))
os.environ.setdefault("STATE_DIR", os.path.join(_ARTIFACT_DIR, "state"))
os.environ.setdefault("CANARY_STATE_PATH", os.path.join(_ARTIFACT_DIR, "state", "canary_state.json"))
os.environ.setdefault("CANARY_SUBSET_PATH", os.path.join(_ARTIFACT_DIR, "outputs", "canary_subset.csv"))

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.db.base import Base
from src.taxonomy.store import TaxonomyStore

TEST_STORE_ID = "test-store"


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with every table created."""
    import src.db.models  # noqa: F401

    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_maker):
    """Taxonomy store seeded from the packaged seed files."""
    taxonomy_store = TaxonomyStore(session_maker, TEST_STORE_ID)
    await taxonomy_store.ensure_seeded()
    return taxonomy_store


@pytest.fixture
def store_id():
    return TEST_STORE_ID
