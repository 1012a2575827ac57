"""Coordinate lookup endpoint returning the tags present at a location.

Example:
    Look up the tags at a coordinate:
        >>> response = client.get(
        ...     "/api/world/osm-tags", params={"lat": 45.81, "lng": 15.97}
        ... )
        >>> response.json()
        >>> # Returns: {"building": ["yes"], "amenity": ["cafe"]}

    A location with no matching geometry is a normal, empty result:
        >>> client.get("/api/world/osm-tags", params={"lat": 0, "lng": 0}).json()
        >>> # Returns: {}
"""

import asyncio
import logging

import fastapi

from worldtags.core import config
from worldtags.db import database
from worldtags.db import models as db_models
from worldtags.services import codec, spatial_query, tag_dictionary

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api/world", tags=["world"])


def _get_engine(request: fastapi.Request) -> spatial_query.SpatialQueryEngine:
    """Resolve the query engine created by the application lifespan.

    Args:
        request: Incoming request carrying the application state.

    Returns:
        The process-wide SpatialQueryEngine.
    """
    return request.app.state.query_engine


@router.get("/osm-tags")
async def get_osm_tags(
    lat: float = fastapi.Query(ge=-90.0, le=90.0),  # noqa: B008
    lng: float = fastapi.Query(ge=-180.0, le=180.0),  # noqa: B008
    engine: spatial_query.SpatialQueryEngine = fastapi.Depends(_get_engine),  # noqa: B008
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> dict[str, list[str]]:
    """Return the tags of every area, node and way at a coordinate.

    Args:
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        engine: Spatial query engine (injected via FastAPI Depends).
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        Mapping from tag key to the values present at the location; empty
        when nothing matches.

    Raises:
        HTTPException: 503 if the tile store fails, 500 if stored tile data
            cannot be decoded or resolved, 504 if the query times out.
    """
    coord = db_models.Coordinate(lat=lat, lng=lng)
    try:
        return await asyncio.wait_for(
            engine.resolve(coord), timeout=settings.query_timeout_seconds
        )
    except TimeoutError:
        logger.warning("Tag lookup at %s timed out", coord)
        raise fastapi.HTTPException(
            status_code=504,
            detail="Tag lookup timed out",
        ) from None
    except database.StorageError:
        logger.exception("Tile store failure during lookup at %s", coord)
        raise fastapi.HTTPException(
            status_code=503,
            detail="Tile store unavailable",
        ) from None
    except (codec.MalformedBlobError, tag_dictionary.TagResolutionError):
        logger.exception("Inconsistent tile data at %s", coord)
        raise fastapi.HTTPException(
            status_code=500,
            detail="Stored tile data is inconsistent",
        ) from None
