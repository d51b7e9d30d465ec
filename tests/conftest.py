"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file through aiosqlite. Tables are
recreated for every test; the Bot API is replaced by AsyncMocks.
"""

import asyncio
import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import bcrypt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Set testing mode BEFORE importing the app: NullPool, limiter off
_db_dir = tempfile.mkdtemp(prefix="portal-tests-")
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/portal.db"
os.environ["TELEGRAM_BOT_TOKEN"] = ""

from portal.config import settings

settings.testing = True

from portal.core.security import create_access_token
from portal.database import get_engine, get_session_maker, reset_database
from portal.main import app
from portal.models import Base, User, UserRole, UserStatus
from portal.services.telegram_bot import BotConfig, TelegramBotClient, get_bot_client
from portal.services.telegram_polling import (
    reset_polling_managers,
    shutdown_polling_managers,
)

TEST_PASSWORD = "Secret123"
# bcrypt is slow; hash once
_TEST_PASSWORD_HASH = bcrypt.hashpw(TEST_PASSWORD.encode(), bcrypt.gensalt(4)).decode()


@pytest_asyncio.fixture(autouse=True)
async def db_schema() -> AsyncGenerator[None, None]:
    """Create every table before a test and drop them afterwards."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await reset_database()


@pytest_asyncio.fixture(autouse=True)
async def polling_managers() -> AsyncGenerator[None, None]:
    """Stop and forget any polling loop a test started."""
    yield
    await shutdown_polling_managers()
    reset_polling_managers()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with get_session_maker()() as session:
        yield session


async def _no_updates(*args, **kwargs) -> list:
    # Yield to the event loop like a real long poll would
    await asyncio.sleep(0.01)
    return []


@pytest.fixture
def bot() -> TelegramBotClient:
    """A real client object whose Bot API calls are AsyncMocks."""
    client = TelegramBotClient(BotConfig(token="123456:test-token", username="portal_bot"))
    client.send_message = AsyncMock(return_value=True)
    client.get_me = AsyncMock(
        return_value={"id": 123456, "is_bot": True, "username": "portal_bot", "first_name": "Portal"}
    )
    client.get_bot_username = AsyncMock(return_value="portal_bot")
    client.get_updates = AsyncMock(side_effect=_no_updates)
    client.delete_webhook = AsyncMock(return_value=True)
    client.get_webhook_info = AsyncMock(return_value={"url": "", "pending_update_count": 0})
    return client


@pytest_asyncio.fixture
async def client(bot) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app with the bot replaced by ``bot``."""
    app.dependency_overrides[get_bot_client] = lambda: bot
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    """Factory that inserts a user and returns it."""

    async def _make_user(
        login: str | None = None,
        *,
        name: str = "Айгүл",
        role: UserRole = UserRole.TEACHER,
        status: UserStatus = UserStatus.VERIFIED,
        telegram_id: str | None = None,
        language: str = "ru",
    ) -> User:
        user = User(
            login=login or f"teacher_{uuid.uuid4().hex[:8]}",
            name=name,
            hashed_password=_TEST_PASSWORD_HASH,
            role=role,
            status=status,
            telegram_id=telegram_id,
            language=language,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    """Build a Bearer header carrying a session token for a user."""

    def _auth_headers(user: User) -> dict[str, str]:
        token = create_access_token(user.id, user.login, user.role.value)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
