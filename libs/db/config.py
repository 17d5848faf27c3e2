from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from libs.common.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    SQLite (used by the test-suite) runs on a single shared connection, so the
    pool sizing options only apply to server databases.
    """
    if settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(
            settings.DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_async_engine(
        settings.DATABASE_URL,
        echo=(settings.ENVIRONMENT == "local"),
        pool_pre_ping=True,  # Test connections before using
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


# Process-scoped handles, created once at import
engine = build_engine(get_settings())
AsyncSessionLocal = build_session_factory(engine)
