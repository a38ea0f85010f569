from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from noteshelf.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str = None) -> AsyncEngine:
    """Create an async engine for the local cache database."""
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.debug,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def create_tables(engine: AsyncEngine):
    """Create all local cache tables."""
    from noteshelf.models import snapshot, binaries, history  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
