# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, Profile, UserSettings
from auth import AuthService, _login_attempts
from database import get_db_session
from main import app

TEST_PASSWORD = "TestPassword123!"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    _login_attempts.clear()
    yield
    _login_attempts.clear()


async def make_profile(db_session, email: str, full_name: str) -> Profile:
    profile = Profile(
        id=str(uuid.uuid4()),
        email=email,
        full_name=full_name,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        is_active=True,
    )
    db_session.add(profile)
    db_session.add(UserSettings(user_id=profile.id))
    await db_session.commit()
    await db_session.refresh(profile)
    return profile


@pytest_asyncio.fixture
async def test_user(db_session):
    """Board owner used by most tests"""
    return await make_profile(db_session, "testuser@kanban.dev", "Test User")


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second, unrelated account"""
    return await make_profile(db_session, "other@kanban.dev", "Other User")


def get_auth_headers(profile: Profile) -> dict:
    """Generate auth headers for a profile"""
    token = AuthService.create_access_token({"sub": profile.id, "email": profile.email})
    return {"Authorization": f"Bearer {token}"}


async def create_board(client: AsyncClient, headers: dict, title: str = "Sprint Board") -> dict:
    res = await client.post("/api/v1/boards", json={"title": title}, headers=headers)
    assert res.status_code == 201
    return res.json()


def column_id(board: dict, title: str) -> str:
    return next(c["id"] for c in board["columns"] if c["title"] == title)
