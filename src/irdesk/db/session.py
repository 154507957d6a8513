"""Async database engine and session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine as _create_engine,
)

from irdesk.db.models import Base


def create_async_engine(database_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create the async SQLAlchemy engine.

    SQLite drivers manage their own pool, so sizing options are only passed
    to server databases.
    """
    if database_url.startswith("sqlite"):
        return _create_engine(database_url, echo=False)
    return _create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=10,
        echo=False,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
