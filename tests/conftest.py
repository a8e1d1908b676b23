from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeConnection
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.asyncio import ConnectionPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from flag_sync.db.utils import create_tables
from flag_sync.services.flags import FlagStore, InMemoryChangeFeed, SqlFlagSource
from flag_sync.settings import settings
from flag_sync.web.application import get_app


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """
    Backend for anyio pytest plugin.

    :return: backend name.
    """
    return "asyncio"


@pytest.fixture
async def _engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create an engine on a throw-away SQLite database with the flag table.

    :yield: new engine.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'flags.db'}")
    await create_tables(engine)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(_engine, expire_on_commit=False)


@pytest.fixture
async def dbsession(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Get session to database.

    :yields: async session.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
async def fake_redis_pool() -> AsyncGenerator[ConnectionPool, None]:
    """
    Get instance of a fake redis.

    :yield: FakeRedis instance.
    """
    server = FakeServer()
    server.connected = True
    pool = ConnectionPool(connection_class=FakeConnection, server=server)

    yield pool

    await pool.disconnect()


@pytest.fixture
def change_feed() -> InMemoryChangeFeed:
    return InMemoryChangeFeed()


@pytest.fixture
def admin_secret() -> str:
    original = settings.admin_secret
    secret = "flags-admin-secret"
    settings.admin_secret = secret
    try:
        yield secret
    finally:
        settings.admin_secret = original


@pytest.fixture
async def fastapi_app(
    session_factory: async_sessionmaker[AsyncSession],
    change_feed: InMemoryChangeFeed,
) -> AsyncGenerator[FastAPI, None]:
    """
    Fixture for creating FastAPI app.

    The lifespan does not run under the test client, so the state it would
    create is assembled here from the test database and feed.

    :yield: fastapi app with test state.
    """
    application = get_app()
    store = FlagStore(
        SqlFlagSource(session_factory),
        change_feed,
        settle_delay=0,
        debounce_delay=0.02,
        skip_events=0,
    )
    application.state.db_session_factory = session_factory
    application.state.flag_change_feed = change_feed
    application.state.flag_store = store
    await store.start()
    await store.wait_until_subscribed(timeout=1.0)
    try:
        yield application
    finally:
        await store.dispose()


@pytest.fixture
async def client(
    fastapi_app: FastAPI,
    anyio_backend: Any,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Fixture that creates client for requesting server.

    :param fastapi_app: the application.
    :yield: client for the app.
    """
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test", timeout=2.0) as ac:
        yield ac
