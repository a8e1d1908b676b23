from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from loguru import logger

from flag_sync.db.utils import create_engine, create_session_factory
from flag_sync.services.flags import SqlFlagSource, build_change_feed, build_flag_store
from flag_sync.services.rabbit.lifespan import init_rabbit, shutdown_rabbit
from flag_sync.services.redis.lifespan import init_redis, shutdown_redis
from flag_sync.settings import settings


def _setup_db(app: FastAPI) -> None:  # pragma: no cover
    """
    Creates connection to the database.

    This function creates SQLAlchemy engine instance,
    session_factory for creating sessions
    and stores them in the application's state property.

    :param app: fastAPI application.
    """
    engine = create_engine()
    app.state.db_engine = engine
    app.state.db_session_factory = create_session_factory(engine)


@asynccontextmanager
async def lifespan_setup(
    app: FastAPI,
) -> AsyncGenerator[None, None]:  # pragma: no cover
    """
    Actions to run on application startup and shutdown.

    The flag store is started before the application accepts requests
    and disposed before the pools it depends on are closed.

    :param app: the fastAPI application.
    :return: function that actually performs actions.
    """

    _setup_db(app)
    backend = settings.flags_feed_backend
    if backend == "redis":
        init_redis(app)
    if backend == "rabbit":
        init_rabbit(app)
    app.state.flag_change_feed = build_change_feed(
        backend,
        redis_pool=getattr(app.state, "redis_pool", None),
        rabbit_pools=(app.state.rmq_pool, app.state.rmq_channel_pool) if backend == "rabbit" else None,
    )
    app.state.flag_store = build_flag_store(
        SqlFlagSource(app.state.db_session_factory),
        app.state.flag_change_feed,
    )
    await app.state.flag_store.start()
    logger.info("Flag store started with the {} change feed", backend)

    yield
    await app.state.flag_store.dispose()
    if backend == "redis":
        await shutdown_redis(app)
    if backend == "rabbit":
        await shutdown_rabbit(app)
    await app.state.db_engine.dispose()
