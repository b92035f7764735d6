from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mediaflow.api.v1 import get_api_router
from mediaflow.core.config import get_settings
from mediaflow.core.db import create_engine, create_session_factory
from mediaflow.core.logging import configure_logging, level_from_name
from mediaflow.core.storage import get_blob_store


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(level=level_from_name(settings.log_level))
    blob_store = get_blob_store(settings)
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )
    app.state.settings = settings
    app.state.blob_store = blob_store
    app.state.engine = engine
    app.state.session_factory = session_factory

    app.include_router(get_api_router())
    return app


__all__ = ["create_app"]
