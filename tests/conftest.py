"""Shared test fixtures: single test DB for all test modules."""
from __future__ import annotations

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base
from src.db.engine import get_session

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


def override_get_session_factory():
    return TestSession


# Import app and override BEFORE any test module imports app
from src.api.main import app  # noqa: E402
from src.api.subscriptions import get_session_factory  # noqa: E402

app.dependency_overrides[get_session] = override_get_session
app.dependency_overrides[get_session_factory] = override_get_session_factory

# Patch the engine module so the scheduler and workers use the test engine
import src.db.engine as _engine_mod  # noqa: E402
import src.services.scheduler as _scheduler_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine
_scheduler_mod.async_session = TestSession


from contextlib import asynccontextmanager  # noqa: E402

@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import src.db.subscription_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(scope="session")
def rsa_private_key_pem() -> str:
    """Throwaway RSA key for signing service-account assertions."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def service_account(rsa_private_key_pem) -> dict:
    return {
        "type": "service_account",
        "client_email": "play-api@cookcam-test.iam.gserviceaccount.com",
        "private_key_id": "test-key-1",
        "private_key": rsa_private_key_pem,
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def service_account_json(service_account) -> str:
    return json.dumps(service_account)


@pytest.fixture
def session_factory():
    return TestSession


@pytest_asyncio.fixture
async def session():
    async with get_test_session() as s:
        yield s
