"""
Global pytest fixtures for the payment reconciler test suite.

Provides:
- Async database session on a temporary SQLite file
- The in-memory Stripe gateway double from tests.utils
- Catalog fixtures (plan + subscriber)
- ASGI test client sharing the test session
"""
import os
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_reconciler"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["INTERNAL_JOB_SECRET"] = "internal-job-secret-for-tests"
os.environ["TELEGRAM_BOT_TOKEN"] = "123:test-token"
os.environ["EMAIL_NOTIFY_URL"] = "https://mail.example.test/send"
os.environ["JOB_SCHEDULER_ENABLED"] = "false"

from tests.utils import PLAN_ID, PLAN_LINK, SUBSCRIBER_ID, FakeStripeGateway  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Rate-limit counters are process-wide; start each test clean."""
    from app.shared.core.rate_limit import reset_rate_limiter

    reset_rate_limiter()
    yield
    reset_rate_limiter()


# ============================================================================
# Async Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from app.shared.db.base import Base
    import app.models  # noqa: F401

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


@pytest_asyncio.fixture
async def catalog(db_session):
    """One plan with a hosted payment link and one subscriber."""
    from app.models.billing import Subscriber, SubscriptionPlan

    plan = SubscriptionPlan(
        id=PLAN_ID,
        name="Monthly Tutoring",
        price=Decimal("49.00"),
        currency="USD",
        duration_months=1,
        payment_link=PLAN_LINK,
        is_active=True,
    )
    subscriber = Subscriber(
        id=SUBSCRIBER_ID,
        name="Amina",
        email="amina@example.test",
        chat_id="555001",
        country="Ethiopia",
    )
    db_session.add_all([plan, subscriber])
    await db_session.commit()
    return {"plan": plan, "subscriber": subscriber}


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def rechecks() -> AsyncMock:
    scheduler = AsyncMock()
    scheduler.schedule = AsyncMock(return_value=3)
    return scheduler


@pytest.fixture
def notifier() -> AsyncMock:
    dispatcher = AsyncMock()
    dispatcher.send_renewal_reminder = AsyncMock(return_value=None)
    return dispatcher


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app():
    from app.main import app as reconciler_app

    return reconciler_app


@pytest_asyncio.fixture
async def async_client(app, db, gateway) -> AsyncGenerator:
    """Async test client. Overrides get_db and the gateway to share test state."""
    from httpx import ASGITransport, AsyncClient

    from app.modules.billing.api.v1.billing import get_payment_gateway
    from app.shared.db.session import get_db

    async def _db_override():
        yield db

    app.dependency_overrides[get_db] = _db_override
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
