from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from flag_sync.db.meta import meta
from flag_sync.db.models import load_all_models
from flag_sync.settings import settings


def create_engine(url: str | None = None) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    :param url: explicit database URL, defaults to the settings value.
    :return: new engine.
    """
    return create_async_engine(url or settings.sqlalchemy_url, echo=settings.db_echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Bind a session factory to ``engine``."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """
    Create all tables known to the metadata.

    Alembic migrations remain the source of truth in production,
    this is used by the CLI ``init-db`` command and the test-suite.

    :param engine: engine to create tables with.
    """
    load_all_models()
    async with engine.begin() as connection:
        await connection.run_sync(meta.create_all)
