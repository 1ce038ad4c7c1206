"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from kontrivibe.db.tables import Base
from kontrivibe.db.engine import get_session

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from kontrivibe.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

import kontrivibe.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

from kontrivibe.auth import create_tokens, hash_password  # noqa: E402
from kontrivibe.db.user_tables import UserRow  # noqa: E402
from kontrivibe.services.fapshi import (  # noqa: E402
    FapshiClient, PaymentInitiation, PaymentReport, get_payment_provider,
)

TEST_PASSWORD = "correct-horse-battery"
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import kontrivibe.db.user_tables  # noqa: F401
    import kontrivibe.db.subscription_tables  # noqa: F401
    import kontrivibe.db.notification_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    # Reset in-memory middleware state between tests
    from kontrivibe.middleware.rate_limit import reset_store
    from kontrivibe.middleware.metrics import metrics
    reset_store()
    metrics.reset()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def make_user(email: str = "listener@kontrivibe.cm", full_name: str = "Ama Listener") -> UserRow:
    async with TestSession() as session:
        user = UserRow(full_name=full_name, email=email, password_hash=_PASSWORD_HASH)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@pytest_asyncio.fixture
async def user() -> UserRow:
    return await make_user()


@pytest.fixture
def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_tokens(user.id)['access_token']}"}


@pytest.fixture
def provider():
    """Fapshi client double, wired into the app's provider dependency."""
    mock = AsyncMock(spec=FapshiClient)
    mock.direct_pay.return_value = PaymentInitiation(transaction_id="abc12345")
    mock.initiate_pay.return_value = PaymentInitiation(
        transaction_id="lnk98765", payment_link="https://checkout.fapshi.com/link/lnk98765",
    )
    mock.expire_pay.return_value = {"statusCode": 200}
    mock.payment_status.return_value = PaymentReport(transaction_id="abc12345", status="PENDING")
    app.dependency_overrides[get_payment_provider] = lambda: mock
    yield mock
    app.dependency_overrides.pop(get_payment_provider, None)
