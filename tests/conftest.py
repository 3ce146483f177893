"""Shared test fixtures for botbridge."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from botbridge.config import Settings
from botbridge.main import create_app
from botbridge.models import Base
from botbridge.services.state_service import StateStore
from tests.fakes import FakePlatform

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from botbridge.sharepoint.client import SharepointClient

logger = logging.getLogger(__name__)

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
TEST_ADMIN_TOKEN = "test-admin-token-0123456789"


@asynccontextmanager
async def create_test_client(
    settings: Settings,
    *,
    platform: FakePlatform | None = None,
    sharepoint_client_factory: Callable[[str], SharepointClient] | None = None,
    http_client: AsyncClient | None = None,
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB, platform
    client, state store) because ASGITransport does not trigger it.
    ``http_client`` stands in for the shared upstream client.
    """
    from botbridge.database import create_engine as create_db_engine

    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.platform = platform if platform is not None else FakePlatform()
    app.state.state_store = StateStore(session_factory, "botbridge", settings.secret_key)
    app.state.sharepoint_client_factory = sharepoint_client_factory
    if http_client is not None:
        app.state.http_client = http_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


def admin_headers(token: str = TEST_ADMIN_TOKEN) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=True,
        admin_token=TEST_ADMIN_TOKEN,
        public_base_url="https://bridge.example.com",
        database_url=f"sqlite+aiosqlite:///{db_path}",
        platform_integration_id="int-1",
        sharepoint_document_library_names="Docs",
        sharepoint_kb_id="kb-default",
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def state_store(session_factory: async_sessionmaker[AsyncSession]) -> StateStore:
    return StateStore(session_factory, "botbridge", TEST_SECRET_KEY)


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()
