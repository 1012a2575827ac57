"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
CORS middleware, includes the world lookup router, and exposes a health
check endpoint for monitoring. The application lifespan opens the single
pooled tile store, loads the tag dictionary and builds the spatial query
engine shared by all requests.

Example:
    The application can be run with uvicorn:
        $ uvicorn worldtags.main:app --reload

    Or through the CLI, which applies the configured listen address:
        $ worldtags start
"""

import contextlib
import logging
from collections.abc import AsyncIterator

import fastapi
from fastapi.middleware import cors

from worldtags.api import world
from worldtags.core import config
from worldtags.db import database
from worldtags.services import spatial_query, tag_dictionary

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: fastapi.FastAPI) -> AsyncIterator[None]:
    """Create the shared store and query engine; close the pool on exit."""
    settings = config.get_settings()
    tags = tag_dictionary.get_tag_dictionary(settings.tags_file)
    store = database.get_tile_store(settings)
    app.state.query_engine = spatial_query.SpatialQueryEngine.from_settings(
        store, tags, settings
    )
    logger.info("Query engine ready with %d tag keys", len(tags))
    try:
        yield
    finally:
        store.close()


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Sets up CORS middleware, includes the world router, and adds a health
    check endpoint. CORS origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    app = fastapi.FastAPI(title="World Tags", version="0.1.0", lifespan=lifespan)

    app.include_router(world.router)

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
