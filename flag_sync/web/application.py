from fastapi import FastAPI
from prometheus_client import make_asgi_app

from flag_sync.log import configure_logging
from flag_sync.web.api.router import api_router
from flag_sync.web.lifespan import lifespan_setup


def get_app() -> FastAPI:
    """
    Get FastAPI application.

    This is the main constructor of an application.

    :return: application.
    """
    configure_logging()
    app = FastAPI(
        title="flag_sync",
        lifespan=lifespan_setup,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    # Main router for the API.
    app.include_router(router=api_router, prefix="/api")
    app.mount("/metrics", make_asgi_app())

    return app
