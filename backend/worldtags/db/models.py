"""Data models for the tile store and the ingestion input.

This module defines the structures used throughout the application to
represent the partitioned world dataset:

- ``Point``, ``FeaturePair`` and ``Coordinate`` value types;
- the four persisted entities (``Tile``, ``Way``, ``Node``, ``Area``) as
  read back from the store, with geometry and features still encoded as
  blobs;
- their insert counterparts (``TileInsert``, ``WayInsert``, ...), which
  carry no generated identifier;
- the tile descriptors produced by the external map-data parser and
  consumed by the bulk ingestion pipeline.

Tile bounds and all geometry are expressed in the store's projected planar
coordinate system (see ``worldtags.services.projection``).

Example:
    Describing one tile with a single tagged polygon:
        >>> from worldtags.db.models import (
        ...     FeatureGeometry, FeaturePair, Point, TileDescriptor,
        ... )
        >>> tile = TileDescriptor(
        ...     min=Point(0.0, 0.0),
        ...     max=Point(10.0, 10.0),
        ...     areas=[
        ...         FeatureGeometry(
        ...             points=(Point(1, 1), Point(9, 1), Point(9, 9)),
        ...             features=(FeaturePair(0, 0),),
        ...         ),
        ...     ],
        ... )
"""

from __future__ import annotations

import dataclasses
from typing import NamedTuple


class Point(NamedTuple):
    """A point in projected planar coordinates."""

    x: float
    y: float


class FeaturePair(NamedTuple):
    """Integer-encoded tag: indices into the tag dictionary."""

    key: int
    value: int


class Coordinate(NamedTuple):
    """A geographic coordinate in degrees."""

    lat: float
    lng: float


@dataclasses.dataclass(frozen=True)
class Tile:
    """Axis-aligned bounding box owning a subset of the geometry.

    Attributes:
        id: Identifier generated by the store.
        min_x: Lower x bound (inclusive).
        min_y: Lower y bound (inclusive).
        max_x: Upper x bound (inclusive).
        max_y: Upper y bound (inclusive).
    """

    id: int
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    def contains(self, point: Point) -> bool:
        """Return True if ``point`` lies inside or on the bounds."""
        return (
            self.min_x <= point.x <= self.max_x
            and self.min_y <= point.y <= self.max_y
        )


@dataclasses.dataclass(frozen=True)
class _GeometryRow:
    id: int
    tile_id: int
    points: bytes
    features: bytes


@dataclasses.dataclass(frozen=True)
class Way(_GeometryRow):
    """Polyline owned by a tile; ``points`` and ``features`` are blobs."""


@dataclasses.dataclass(frozen=True)
class Area(_GeometryRow):
    """Polygon owned by a tile; ``points`` and ``features`` are blobs."""


@dataclasses.dataclass(frozen=True)
class Node:
    """Single tagged point owned by a tile."""

    id: int
    tile_id: int
    x: float
    y: float
    features: bytes


@dataclasses.dataclass(frozen=True)
class TileInsert:
    min_x: float
    min_y: float
    max_x: float
    max_y: float


@dataclasses.dataclass(frozen=True)
class _GeometryInsert:
    points: bytes
    features: bytes
    tile_id: int | None = None


@dataclasses.dataclass(frozen=True)
class WayInsert(_GeometryInsert):
    pass


@dataclasses.dataclass(frozen=True)
class AreaInsert(_GeometryInsert):
    pass


@dataclasses.dataclass(frozen=True)
class NodeInsert:
    x: float
    y: float
    features: bytes
    tile_id: int | None = None


@dataclasses.dataclass(frozen=True)
class FeatureGeometry:
    """Decoded polygon or polyline with its feature pairs.

    Attributes:
        points: Ordered vertices; at least two are required.
        features: Feature pairs attached to the geometry.
    """

    points: tuple[Point, ...]
    features: tuple[FeaturePair, ...] = ()


@dataclasses.dataclass(frozen=True)
class FeatureNode:
    """Decoded node with its feature pairs."""

    point: Point
    features: tuple[FeaturePair, ...] = ()


@dataclasses.dataclass(frozen=True)
class TileDescriptor:
    """One tile as produced by the map-data parser, before ingestion.

    Attributes:
        min: Lower-left corner of the tile bounds.
        max: Upper-right corner of the tile bounds.
        areas: Polygons owned by the tile.
        nodes: Points owned by the tile.
        ways: Polylines owned by the tile.
    """

    min: Point
    max: Point
    areas: list[FeatureGeometry] = dataclasses.field(default_factory=list)
    nodes: list[FeatureNode] = dataclasses.field(default_factory=list)
    ways: list[FeatureGeometry] = dataclasses.field(default_factory=list)
