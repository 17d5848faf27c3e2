from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from libs.common.config import get_settings
from libs.db.base import Base
from libs.db.config import build_session_factory
from libs.db.session import get_async_db
from services.payments_service import models as _payment_models  # noqa: F401
from services.payments_service.app.main import create_app
from services.payments_service.dependencies import get_gateway
from tests.stubs import StubGateway

settings = get_settings()


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory database per test. StaticPool keeps every session on the
    same connection so the schema survives between checkouts.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield the session used by tests to seed and inspect data.
    """
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest_asyncio.fixture
async def client(session_factory, gateway) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient for the payments app with the DB and gateway
    dependencies overridden. Each request gets its own session, as in
    production.
    """
    app = create_app()

    async def _get_test_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_async_db] = _get_test_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_auth_headers():
    """
    Return a helper that signs an identity-provider token for ``sub``.
    """

    def _make(sub: str, email: str = "seller@example.com") -> dict:
        token = jwt.encode(
            {"sub": sub, "email": email, "role": "authenticated"},
            settings.SUPABASE_JWT_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return _make
