"""Shared test fixtures — single in-memory test DB for all test modules."""
from __future__ import annotations

import json
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///file:paysync_test?mode=memory&cache=shared&uri=true"
os.environ["WEBHOOK_SECRET"] = "whsec_generic_test"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test"
os.environ["PAYSTACK_WEBHOOK_SECRET"] = "sk_paystack_test"
os.environ["ADMIN_API_KEY"] = "admin-test-key"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

from paysync.db.engine import build_engine, get_session, get_sessionmaker
from paysync.db.tables import Base
import paysync.db.user_tables  # noqa: F401
import paysync.db.subscription_tables  # noqa: F401
import paysync.db.webhook_tables  # noqa: F401
from paysync.db.user_tables import UserRow
from paysync.services.plans import PlanCatalog
from paysync.services.processor import WebhookProcessor
from paysync.services.signatures import sign_payload
from tests.helpers import webhook_body

TEST_DB_URL = "sqlite+aiosqlite:///file:paysync_test?mode=memory&cache=shared&uri=true"

test_engine = build_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from paysync.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session
app.dependency_overrides[get_sessionmaker] = lambda: TestSession

# Patch the module-level session factory and engine to use our test engine
import paysync.db.engine as _engine_mod
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    from paysync.middleware.metrics import metrics
    metrics.reset()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def session_factory():
    return TestSession


@pytest.fixture
def plans():
    return PlanCatalog()


@pytest.fixture
def processor(plans):
    return WebhookProcessor(TestSession, plans)


@pytest.fixture
def make_user():
    """Provision a user the way the (external) signup flow would."""

    async def _make(email: str | None = None, external_customer_id: str | None = None) -> UserRow:
        async with TestSession() as session:
            user = UserRow(email=email, external_customer_id=external_customer_id)
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def payload():
    return webhook_body


@pytest.fixture
def signed():
    """Serialize a body and sign it for a provider: returns (raw_bytes, headers)."""

    def _signed(body: dict, provider: str = "generic", secret: str | None = None) -> tuple[bytes, dict]:
        from config.settings import settings
        raw = json.dumps(body).encode()
        return raw, sign_payload(provider, raw, secret or settings.webhook_secret(provider))

    return _signed
