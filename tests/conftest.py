"""Shared fixtures: a fresh file-backed SQLite database per test."""
import os
from pathlib import Path

import pytest

from tagfinder.db import Base, create_engine_for_url, create_session_factory
from tests.helpers import FakeStorage

# Test database URL
TEST_DB_PATH = Path("./test_tagfinder.db")
TEST_DB_URL = f"sqlite+aiosqlite:///{TEST_DB_PATH}"


@pytest.fixture(scope="function")
async def test_engine():
    """Create the database and all tables."""
    if TEST_DB_PATH.exists():
        os.remove(TEST_DB_PATH)
    engine = create_engine_for_url(TEST_DB_URL, connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Cleanup: drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    if TEST_DB_PATH.exists():
        os.remove(TEST_DB_PATH)


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture(scope="function")
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage():
    return FakeStorage()
