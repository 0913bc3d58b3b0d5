# backend/tests/conftest.py
import os

# Settings are read at import time; pin a hermetic environment first
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["FRONTEND_URL"] = "http://localhost:3000"
os.environ["WEBAUTHN_RP_ID"] = "localhost"
os.environ["WEBAUTHN_ORIGIN"] = "http://localhost:3000"
os.environ["WEBAUTHN_CHALLENGE_BACKEND"] = "memory"
os.environ["WEBAUTHN_CLONE_POLICY"] = "block"
os.environ["COOKIE_SECURE"] = "false"
os.environ.pop("SECURITY_LOG_PATH", None)

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from passkey_gate.core.config import settings  # noqa: E402
from passkey_gate.core.rate_limit import limiter  # noqa: E402
from passkey_gate.db.base import Base  # noqa: E402
from passkey_gate.db.session import get_async_session  # noqa: E402
from passkey_gate.main import app as fastapi_app  # noqa: E402
from passkey_gate.services.challenge_store import (  # noqa: E402
    InMemoryChallengeStore,
    get_challenge_store,
)
from tests.helpers.software_authenticator import SoftwareAuthenticator  # noqa: E402

TEST_DATABASE_URL = settings.ASYNC_SQLALCHEMY_DATABASE_URL


@pytest.fixture(autouse=True)
def _disable_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Creates/Disposes an in-memory database FOR EACH TEST FUNCTION."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yields a database session per function, using the function-scoped engine."""
    TestSessionFactory = async_sessionmaker(
        test_engine, expire_on_commit=False, autoflush=False, class_=AsyncSession
    )
    async with TestSessionFactory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore(ttl_seconds=300, sweep_interval_seconds=60)


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator(origin="http://localhost:3000")


@pytest_asyncio.fixture(scope="function")
async def test_client(
    db_session: AsyncSession, challenge_store: InMemoryChallengeStore
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient over ASGITransport, wired to the test session and a
    fresh challenge store.
    """

    async def override_get_async_session_for_test() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    fastapi_app.dependency_overrides[get_async_session] = override_get_async_session_for_test
    fastapi_app.dependency_overrides[get_challenge_store] = lambda: challenge_store

    async with AsyncClient(
        transport=ASGITransport(app=fastapi_app), base_url="http://test"
    ) as client:
        yield client

    fastapi_app.dependency_overrides.clear()
