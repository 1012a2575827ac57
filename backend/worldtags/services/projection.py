"""Projection of geographic coordinates into the tile store's plane.

Tile bounds and geometry are stored in planar coordinates. Incoming
``(lng, lat)`` pairs are projected with the same projection the dataset was
extracted with before any tile lookup.

Example:
    >>> from worldtags.services.projection import get_projection
    >>> projection = get_projection("web_mercator")
    >>> point = projection.project(15.97, 45.81)  # metres east/north
"""

from __future__ import annotations

from typing import Protocol

import pyproj

from worldtags.core import config
from worldtags.db import models as db_models


class Projection(Protocol):
    def project(self, longitude: float, latitude: float) -> db_models.Point: ...


class WebMercatorProjection:
    """WGS84 degrees to EPSG:3857 metres."""

    def __init__(self) -> None:
        self._transformer = pyproj.Transformer.from_crs(
            "EPSG:4326", "EPSG:3857", always_xy=True
        )

    def project(self, longitude: float, latitude: float) -> db_models.Point:
        x, y = self._transformer.transform(longitude, latitude)
        return db_models.Point(float(x), float(y))


class IdentityProjection:
    """Uses longitude as x and latitude as y, for already-planar data."""

    def project(self, longitude: float, latitude: float) -> db_models.Point:
        return db_models.Point(float(longitude), float(latitude))


def get_projection(name: config.ProjectionName) -> Projection:
    """Build the projection named in settings.

    Raises:
        ValueError: If ``name`` is not a known projection.
    """
    if name == "web_mercator":
        return WebMercatorProjection()
    if name == "identity":
        return IdentityProjection()
    raise ValueError(f"Unknown projection: {name}")
