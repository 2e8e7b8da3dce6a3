"""
Port Coordinator - Test Fixtures
================================

Shared pytest fixtures for all tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from portcoord.api.main import app
from portcoord.core.coordination import (
    DependencyResolver,
    EscalationService,
    FeedbackLoopController,
    PipelineService,
    PortDispatcher,
    ResourceLockManager,
)
from portcoord.core.database import Base, get_db
from portcoord.core import models  # noqa: F401


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine with real, separate connections.

    Used where independent sessions must race on the same store.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'coord.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database override.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ==========================================================================
# Service Fixtures
# ==========================================================================

@pytest.fixture
def pipelines(db_session: AsyncSession) -> PipelineService:
    return PipelineService(db_session)


@pytest.fixture
def resolver(db_session: AsyncSession) -> DependencyResolver:
    return DependencyResolver(db_session)


@pytest.fixture
def locks(db_session: AsyncSession) -> ResourceLockManager:
    return ResourceLockManager(db_session)


@pytest.fixture
def dispatcher(db_session: AsyncSession) -> PortDispatcher:
    return PortDispatcher(db_session)


@pytest.fixture
def escalations(db_session: AsyncSession) -> EscalationService:
    return EscalationService(db_session)


@pytest.fixture
def feedback(db_session: AsyncSession) -> FeedbackLoopController:
    return FeedbackLoopController(db_session)
