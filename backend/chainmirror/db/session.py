from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from chainmirror.core.errors import ConfigurationError


def make_engine(database_url: str) -> AsyncEngine:
    if not database_url:
        raise ConfigurationError("DATABASE_URL is not set")
    return create_async_engine(database_url, future=True)


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
