import os


os.environ["OTEL_SDK_DISABLED"] = "true"
os.environ["AUTH_JWT_SECRET"] = "test-secret-key-that-is-at-least-32-bytes"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from collections.abc import AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from smart_todo.auth import create_access_token
from smart_todo.config import get_settings
from smart_todo.database import Base, create_session_factory
from smart_todo.main import app
from smart_todo.services.extraction import TaskExtractor
from smart_todo.services.tasks import TaskRepository


USER_ID = "4b1f6a52-0c1e-4b9e-9a55-1d2f0e7c9a01"
OTHER_USER_ID = "9c3e2d10-5f4a-4e8b-8d7c-6b5a4f3e2d10"


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(session: AsyncSession) -> TaskRepository:
    return TaskRepository(session)


@pytest.fixture
def llm_client() -> AsyncMock:
    client = AsyncMock()
    client.chat.return_value = "buy eggs\nwalk dog"
    return client


@pytest.fixture
def extractor(llm_client: AsyncMock) -> TaskExtractor:
    return TaskExtractor(llm_client)


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession], extractor: TaskExtractor
) -> AsyncGenerator[httpx.AsyncClient]:
    app.state.session_factory = session_factory
    app.state.extractor = extractor
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        token = create_access_token(user_id, get_settings())
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(make_auth_headers: Callable[[str], dict[str, str]]) -> dict[str, str]:
    return make_auth_headers(USER_ID)


@pytest.fixture
def other_auth_headers(make_auth_headers: Callable[[str], dict[str, str]]) -> dict[str, str]:
    return make_auth_headers(OTHER_USER_ID)


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def other_user_id() -> str:
    return OTHER_USER_ID
