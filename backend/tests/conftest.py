"""
Pytest configuration and fixtures for backend tests.

Provides a file-backed SQLite storage provider per test, the application
wired to it, an async HTTP client, test users, and authentication headers.
"""
import os

os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-characters-long")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./schooladmin-test.db")

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.config import Settings
from schooladmin.core.database import Base, StorageHandleProvider
from schooladmin.core.security import create_access_token, get_password_hash
from schooladmin.main import create_app
from schooladmin.models import AuditLog, Soldier

TEST_JWT_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
ADMIN_PASSWORD = "AdminPassword123"
USER_PASSWORD = "TestPassword123"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENV="test",
        JWT_SECRET=TEST_JWT_SECRET,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        FRONTEND_URL="http://localhost:5173",
        LOG_LEVEL="WARNING",
    )


@pytest_asyncio.fixture(scope="function")
async def storage(settings: Settings) -> AsyncGenerator[StorageHandleProvider, None]:
    """Storage provider over a fresh SQLite file; survives engine rebuilds."""
    provider = StorageHandleProvider(settings.DATABASE_URL)
    async with provider.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield provider

    await provider.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(storage: StorageHandleProvider) -> AsyncGenerator[AsyncSession, None]:
    async with storage.session() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def app(settings: Settings, storage: StorageHandleProvider):
    application = create_app(settings=settings, storage=storage)
    yield application
    await application.state.audit_writer.drain()
    await application.state.verifier.drain()


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture(scope="function")
async def admin_user(db_session: AsyncSession) -> Soldier:
    user = Soldier(
        personal_number="1000001",
        name="Admin User",
        email="admin@school.example",
        hashed_password=get_password_hash(ADMIN_PASSWORD),
        is_admin=True,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture(scope="function")
async def test_user(db_session: AsyncSession) -> Soldier:
    user = Soldier(
        personal_number="2000002",
        name="Test User",
        email="user@school.example",
        hashed_password=get_password_hash(USER_PASSWORD),
        is_admin=False,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


def bearer_for(user: Soldier, settings: Settings) -> dict:
    token = create_access_token(
        user.id,
        email=user.email,
        personal_number=user.personal_number,
        settings=settings,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user: Soldier, settings: Settings) -> dict:
    return bearer_for(admin_user, settings)


@pytest.fixture
def auth_headers(test_user: Soldier, settings: Settings) -> dict:
    return bearer_for(test_user, settings)


@pytest.fixture
def audit_logs(app, storage: StorageHandleProvider):
    """Return a coroutine that waits for pending audit writes and loads matching rows."""

    async def fetch(**filters) -> list[AuditLog]:
        await app.state.audit_writer.drain()
        query = select(AuditLog).order_by(AuditLog.id)
        for name, value in filters.items():
            query = query.where(getattr(AuditLog, name) == value)
        async with storage.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    return fetch
