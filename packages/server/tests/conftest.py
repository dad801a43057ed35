"""
Shared fixtures for backend tests.

The app runs against a throwaway SQLite file and a mocked Redis client, so
the suite needs neither PostgreSQL nor Redis. Tables are recreated for every
test.
"""

import os
import tempfile
import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Must be set before the app (and its engine) is imported.
_DB_DIR = tempfile.mkdtemp(prefix="klypp-test-")
os.environ["KLYPP_DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["KLYPP_SECRET_KEY"] = "test-secret-key-with-enough-length-for-hs256"
os.environ["KLYPP_AUTO_CREATE_TABLES"] = "false"
os.environ["KLYPP_DEBUG"] = "false"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import app.core.redis as redis_module  # noqa: E402
import app.models  # noqa: E402,F401
from app.core.auth import create_jwt  # noqa: E402
from app.core.database import async_session_factory, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Notification, Subscription, SubscriptionMember, User  # noqa: E402


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    # Pooled aiosqlite connections belong to this test's event loop.
    await engine.dispose()


@pytest.fixture(autouse=True)
def redis_mock(monkeypatch):
    fake = MagicMock()
    fake.publish = AsyncMock(return_value=1)
    fake.ping = AsyncMock(return_value=True)
    fake.close = AsyncMock()
    monkeypatch.setattr(redis_module, "_redis_pool", fake)
    return fake


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth():
    """``auth(user_id)`` -> Authorization header for that user."""
    def headers(user_id: uuid.UUID) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_jwt(user_id)}"}
    return headers


@pytest.fixture
async def seeded():
    """Admin with one shared subscription; alice accepted, bob pending, carol unrelated."""
    ids = SimpleNamespace(
        admin=uuid.uuid4(),
        alice=uuid.uuid4(),
        bob=uuid.uuid4(),
        carol=uuid.uuid4(),
        sub=uuid.uuid4(),
    )
    async with async_session_factory() as session:
        for user_id, username in (
            (ids.admin, "admin"),
            (ids.alice, "alice"),
            (ids.bob, "bob"),
            (ids.carol, "Carol"),
        ):
            session.add(User(user_id=user_id, username=username, name=username.title()))
        await session.flush()
        session.add(
            Subscription(
                subscription_id=ids.sub,
                admin_id=ids.admin,
                name="Streaming",
                cost=Decimal("15.99"),
                renewal_frequency="monthly",
                start_date=date(2024, 1, 1),
                next_renewal_date=date(2024, 2, 1),
                is_shared=True,
                max_members=4,
            )
        )
        await session.flush()
        session.add(SubscriptionMember(subscription_id=ids.sub, user_id=ids.alice, status="accepted"))
        session.add(SubscriptionMember(subscription_id=ids.sub, user_id=ids.bob, status="pending"))
        session.add(
            Notification(
                user_id=ids.bob,
                subscription_id=ids.sub,
                message="You have been invited to join the Streaming subscription",
                type="invite",
            )
        )
        await session.commit()
    return ids
