"""
Pytest fixtures for PollGuard backend tests.
"""

import os
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("VOTE_TOKEN_SECRET", "test-vote-token-secret")
os.environ.setdefault("VOTE_MIN_TIME_BETWEEN_VOTES_MS", "0")

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for async tests."""
    return "asyncio"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def db_engine():
    """Fresh in-memory database with all tables."""
    import models  # noqa: F401
    from db.base import Base

    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the test database."""
    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


async def _create_poll(session: AsyncSession, **flags: Any):
    from models import Poll, PollOption

    poll = Poll(title="Which feature should we build next?", **flags)
    poll.options = [
        PollOption(text="Dark mode", order=0),
        PollOption(text="Offline sync", order=1),
        PollOption(text="Calendar export", order=2),
    ]
    session.add(poll)
    await session.commit()
    # Plain snapshot; ORM instances expire when a test triggers a rollback
    return SimpleNamespace(id=poll.id, option_ids=[option.id for option in poll.options])


@pytest.fixture
def poll_factory(db_session: AsyncSession):
    """Create polls with three options and the given flags."""

    async def factory(**flags: Any):
        return await _create_poll(db_session, **flags)

    return factory


@pytest.fixture
async def anonymous_poll(poll_factory):
    """Anonymous, single-choice poll that does not allow vote changes."""
    return await poll_factory()


# =============================================================================
# Application
# =============================================================================


@pytest.fixture
async def app(db_session: AsyncSession) -> Any:
    """FastAPI application wired to the test database."""
    from db.session import get_db
    from main import app as fastapi_app

    async def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with a device fingerprint header."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Fingerprint": "device-fingerprint-a"},
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Bearer token for an authenticated voter."""
    from core.security import create_access_token

    token = create_access_token({"sub": "voter-123"})
    return {"Authorization": f"Bearer {token}"}


# =============================================================================
# Mocks
# =============================================================================


@pytest.fixture
def mock_db_session() -> AsyncMock:
    """Create mock database session."""
    session = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    session.refresh = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


@pytest.fixture
def mock_storage() -> MagicMock:
    """Vote storage that has seen nothing yet."""
    storage = MagicMock()
    storage.get_vote_attempt = AsyncMock(return_value=None)
    storage.increment_vote_attempt = AsyncMock()
    storage.reset_vote_attempt = AsyncMock()
    storage.has_user_voted = AsyncMock(return_value=False)
    storage.get_user_votes = AsyncMock(return_value=[])
    storage.get_last_vote_time = AsyncMock(return_value=None)
    storage.submit_vote = AsyncMock(return_value=MagicMock(id="vote-1"))
    storage.submit_votes = AsyncMock(return_value=[MagicMock(id="vote-1"), MagicMock(id="vote-2")])
    storage.update_vote = AsyncMock(return_value=MagicMock(id="vote-1"))
    storage.replace_user_votes = AsyncMock(return_value=[MagicMock(id="vote-3")])
    storage.remove_user_votes = AsyncMock(return_value=0)
    storage.is_token_used = AsyncMock(return_value=False)
    storage.mark_token_used = AsyncMock(return_value=True)
    return storage
