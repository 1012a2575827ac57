"""Tests for the spatial query engine.

This module verifies coordinate resolution against an in-memory tile
store using the identity projection, so query coordinates are planar
(x = lng, y = lat):
    - polygon containment, node proximity and polyline distance matching,
    - inclusive tile bounds and isolation between tiles,
    - deduplication of feature pairs across geometries and tiles,
    - fail-fast resolution of out-of-range stored pairs,
    - propagation of storage and blob errors.

See Also:
    - backend/worldtags/services/spatial_query.py for the implementation.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from worldtags.core import config
from worldtags.db import database
from worldtags.db import models as db_models
from worldtags.services import codec, projection, spatial_query, tag_dictionary

if TYPE_CHECKING:
    from collections.abc import Sequence


TAGS = tag_dictionary.TagDictionary(
    [
        ("building", ["yes", "house"]),
        ("amenity", ["cafe", "bench"]),
        ("highway", ["residential"]),
    ]
)
BUILDING_YES = db_models.FeaturePair(0, 0)
AMENITY_CAFE = db_models.FeaturePair(1, 0)
AMENITY_BENCH = db_models.FeaturePair(1, 1)
HIGHWAY_RESIDENTIAL = db_models.FeaturePair(2, 0)

SQUARE = [
    db_models.Point(1, 1),
    db_models.Point(9, 1),
    db_models.Point(9, 9),
    db_models.Point(1, 9),
]

_codec = codec.GeometryCodec()


def _add_tile(
    store: database.InMemoryTileStore,
    bounds: tuple[float, float, float, float],
    *,
    areas: Sequence[tuple[list[db_models.Point], list[db_models.FeaturePair]]] = (),
    nodes: Sequence[tuple[db_models.Point, list[db_models.FeaturePair]]] = (),
    ways: Sequence[tuple[list[db_models.Point], list[db_models.FeaturePair]]] = (),
) -> int:
    with store.transaction() as tx:
        (tile_id,) = tx.insert_tiles([db_models.TileInsert(*bounds)])
        tx.insert_areas(
            [
                db_models.AreaInsert(
                    _codec.encode_points(points),
                    _codec.encode_features(features),
                    tile_id=tile_id,
                )
                for points, features in areas
            ]
        )
        tx.insert_nodes(
            [
                db_models.NodeInsert(
                    x=point.x,
                    y=point.y,
                    features=_codec.encode_features(features),
                    tile_id=tile_id,
                )
                for point, features in nodes
            ]
        )
        tx.insert_ways(
            [
                db_models.WayInsert(
                    _codec.encode_points(points),
                    _codec.encode_features(features),
                    tile_id=tile_id,
                )
                for points, features in ways
            ]
        )
    return tile_id


def _engine(
    store: database.TileStoreProtocol,
    *,
    node_distance: float = 1.0,
    way_distance: float = 1.0,
    tags: tag_dictionary.TagDictionary = TAGS,
) -> spatial_query.SpatialQueryEngine:
    return spatial_query.SpatialQueryEngine(
        store,
        tags,
        projection=projection.IdentityProjection(),
        node_distance=node_distance,
        way_distance=way_distance,
    )


def _resolve(
    engine: spatial_query.SpatialQueryEngine, x: float, y: float
) -> dict[str, list[str]]:
    return asyncio.run(engine.resolve(db_models.Coordinate(lat=y, lng=x)))


def test_area_hit_and_miss() -> None:
    """Test that a polygon matches inside and nothing matches far away."""
    store = database.InMemoryTileStore()
    _add_tile(store, (0, 0, 10, 10), areas=[(SQUARE, [BUILDING_YES])])
    engine = _engine(store, tags=tag_dictionary.load_bundled_tag_dictionary())
    assert _resolve(engine, 5, 5) == {"building": ["yes"]}
    assert _resolve(engine, 50, 50) == {}


def test_area_outside_polygon_inside_tile() -> None:
    """Test that tile membership alone does not match an area."""
    store = database.InMemoryTileStore()
    _add_tile(store, (0, 0, 10, 10), areas=[(SQUARE, [BUILDING_YES])])
    assert _resolve(_engine(store), 0.5, 0.5) == {}


def test_node_exactly_at_coordinate_matches() -> None:
    """Test that a node at the query point matches even with zero radius."""
    store = database.InMemoryTileStore()
    _add_tile(
        store, (0, 0, 10, 10), nodes=[(db_models.Point(3, 4), [AMENITY_BENCH])]
    )
    assert _resolve(_engine(store, node_distance=0.0), 3, 4) == {
        "amenity": ["bench"]
    }


def test_node_beyond_distance_never_matches() -> None:
    """Test that a node farther than node_distance is not reported."""
    store = database.InMemoryTileStore()
    _add_tile(
        store, (0, 0, 10, 10), nodes=[(db_models.Point(3, 4), [AMENITY_BENCH])]
    )
    engine = _engine(store, node_distance=1.0)
    assert _resolve(engine, 3, 5) == {"amenity": ["bench"]}
    assert _resolve(engine, 3, 5.01) == {}


def test_way_distance_threshold() -> None:
    """Test that a polyline matches within way_distance of any segment."""
    store = database.InMemoryTileStore()
    road = [db_models.Point(0, 5), db_models.Point(10, 5)]
    _add_tile(store, (0, 0, 10, 10), ways=[(road, [HIGHWAY_RESIDENTIAL])])
    engine = _engine(store, way_distance=0.5)
    assert _resolve(engine, 4, 5.5) == {"highway": ["residential"]}
    assert _resolve(engine, 4, 6) == {}


def test_duplicate_features_collapse() -> None:
    """Test that one pair carried by area, node and way is reported once."""
    store = database.InMemoryTileStore()
    _add_tile(
        store,
        (0, 0, 10, 10),
        areas=[(SQUARE, [AMENITY_CAFE])],
        nodes=[(db_models.Point(5, 5), [AMENITY_CAFE])],
        ways=[([db_models.Point(0, 5), db_models.Point(10, 5)], [AMENITY_CAFE])],
    )
    engine = _engine(store)
    assert asyncio.run(
        engine.matching_features(db_models.Coordinate(lat=5, lng=5))
    ) == {AMENITY_CAFE}
    assert _resolve(engine, 5, 5) == {"amenity": ["cafe"]}


def test_features_from_all_geometry_kinds_are_merged() -> None:
    """Test that distinct pairs from every matching geometry are unioned."""
    store = database.InMemoryTileStore()
    _add_tile(
        store,
        (0, 0, 10, 10),
        areas=[(SQUARE, [BUILDING_YES, AMENITY_CAFE])],
        nodes=[(db_models.Point(5, 5), [AMENITY_BENCH])],
        ways=[([db_models.Point(0, 5), db_models.Point(10, 5)], [HIGHWAY_RESIDENTIAL])],
    )
    assert _resolve(_engine(store), 5, 5) == {
        "building": ["yes"],
        "amenity": ["cafe", "bench"],
        "highway": ["residential"],
    }


def test_only_features_of_containing_tile() -> None:
    """Test that a query inside one tile ignores another tile's geometry."""
    store = database.InMemoryTileStore()
    _add_tile(store, (0, 0, 10, 10), areas=[(SQUARE, [BUILDING_YES])])
    far_square = [db_models.Point(x + 20, y) for x, y in SQUARE]
    _add_tile(store, (20, 0, 30, 10), areas=[(far_square, [AMENITY_CAFE])])
    engine = _engine(store)
    assert _resolve(engine, 5, 5) == {"building": ["yes"]}
    assert _resolve(engine, 25, 5) == {"amenity": ["cafe"]}


def test_boundary_point_matches_tile_at_max_x() -> None:
    """Test that a coordinate at a tile's max_x still selects the tile."""
    store = database.InMemoryTileStore()
    _add_tile(
        store, (0, 0, 10, 10), nodes=[(db_models.Point(10, 5), [AMENITY_BENCH])]
    )
    _add_tile(
        store, (10, 0, 20, 10), nodes=[(db_models.Point(10, 5), [AMENITY_BENCH])]
    )
    assert _resolve(_engine(store, node_distance=0.0), 10, 5) == {
        "amenity": ["bench"]
    }


def test_out_of_range_stored_pair_fails_query() -> None:
    """Test that a stored pair outside the dictionary aborts the lookup."""
    store = database.InMemoryTileStore()
    _add_tile(
        store,
        (0, 0, 10, 10),
        areas=[(SQUARE, [BUILDING_YES, db_models.FeaturePair(9, 0)])],
    )
    with pytest.raises(tag_dictionary.TagResolutionError):
        _resolve(_engine(store), 5, 5)


def test_malformed_blob_fails_query() -> None:
    """Test that a corrupt point blob surfaces instead of being truncated."""
    store = database.InMemoryTileStore()
    with store.transaction() as tx:
        (tile_id,) = tx.insert_tiles([db_models.TileInsert(0, 0, 10, 10)])
        tx.insert_areas([db_models.AreaInsert(b"\x00" * 20, b"", tile_id=tile_id)])
    with pytest.raises(codec.MalformedBlobError):
        _resolve(_engine(store), 5, 5)


def test_storage_error_propagates() -> None:
    """Test that a failing store read aborts the whole query."""

    class BrokenStore(database.InMemoryTileStore):
        def nodes_for_tile(self, tile_id: int) -> list[db_models.Node]:
            raise database.StorageError("connection lost")

    store = BrokenStore()
    _add_tile(store, (0, 0, 10, 10), areas=[(SQUARE, [BUILDING_YES])])
    with pytest.raises(database.StorageError, match="connection lost"):
        _resolve(_engine(store), 5, 5)


def test_negative_distance_rejected() -> None:
    """Test that match distances must not be negative."""
    with pytest.raises(ValueError):
        _engine(database.InMemoryTileStore(), node_distance=-1.0)


def test_from_settings_uses_configured_thresholds() -> None:
    """Test that thresholds and projection come from settings."""
    settings = config.Settings(
        node_distance=0.25, way_distance=0.75, projection="identity"
    )
    engine = spatial_query.SpatialQueryEngine.from_settings(
        database.InMemoryTileStore(), TAGS, settings
    )
    assert engine.node_distance == 0.25
    assert engine.way_distance == 0.75
    assert isinstance(engine.projection, projection.IdentityProjection)
