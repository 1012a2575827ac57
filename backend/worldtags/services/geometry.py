"""Planar geometry predicates used by the spatial query engine.

Thin wrappers over shapely so the query engine works with plain point
sequences decoded from the store.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import shapely

if TYPE_CHECKING:
    from collections.abc import Sequence

    from worldtags.db import models as db_models


def contains_point(
    polygon: Sequence[db_models.Point], point: db_models.Point
) -> bool:
    """Test whether ``point`` lies inside or on the boundary of a polygon.

    The ring is closed implicitly; fewer than three vertices enclose
    nothing.

    Args:
        polygon: Ring vertices in order.
        point: Point to test.

    Returns:
        True if the polygon covers the point.
    """
    if len(polygon) < 3:
        return False
    return bool(shapely.Polygon(polygon).covers(shapely.Point(point)))


def distance_to(
    polyline: Sequence[db_models.Point], point: db_models.Point
) -> float:
    """Minimum Euclidean distance from ``point`` to any polyline segment.

    Raises:
        ValueError: If the polyline has no vertices.
    """
    if not polyline:
        raise ValueError("Polyline has no points")
    if len(polyline) == 1:
        return point_distance(polyline[0], point)
    return float(shapely.LineString(polyline).distance(shapely.Point(point)))


def point_distance(a: db_models.Point, b: db_models.Point) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)
