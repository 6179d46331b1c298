"""FastAPI application entrypoint and configuration.

This module provides the FastAPI application factory. It configures
logging, attaches one catalog store per application (opened at startup and
closed at shutdown), sets up CORS middleware, includes the API routers for
search, records, distributions, import, export and embeddings, and exposes
a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn geocatalog.main:app --reload

    Or created with explicit settings, e.g. in tests:
        >>> from geocatalog import main
        >>> from geocatalog.core import config
        >>> app = main.create_app(config.Settings(snapshot_backend="memory"))
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from geocatalog.api import embeddings, exports, imports, resources
from geocatalog.core import config
from geocatalog.core import logging as core_logging
from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Open the catalog store on startup and close it on shutdown."""
    store: db_store.CatalogStore = app.state.store
    if not await store.open():
        logger.error("Catalog store unavailable; serving degraded results")
    try:
        yield
    finally:
        await store.close()


def create_app(settings: config.Settings | None = None) -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Sets up logging, the catalog store, CORS middleware, the API routers
    and a health check endpoint. CORS origins are configured from settings,
    allowing cross-origin requests from specified domains.

    Args:
        settings: Settings to use; defaults to the cached environment
            settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from geocatalog.main import app
    """
    settings = settings or config.get_settings()
    core_logging.configure_logging(settings.log_level)

    app = fastapi.FastAPI(title="Geocatalog", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = db_store.CatalogStore(settings)

    app.include_router(resources.router)
    app.include_router(resources.distributions_router)
    app.include_router(imports.router)
    app.include_router(exports.router)
    app.include_router(embeddings.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" if the service is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
