"""Coordinate to tag resolution against the tile store.

A query projects the coordinate into the store's plane, selects every tile
whose bounds contain it (bounds are inclusive, so a point on a shared edge
selects all adjacent tiles), and scans each selected tile's areas, nodes
and ways:

- an area matches when its polygon covers the point;
- a node matches when it lies within ``node_distance`` of the point;
- a way matches when the point lies within ``way_distance`` of the
  polyline.

Feature pairs of all matches are collected into a set, which collapses
duplicates from overlapping tiles or geometries, and the set is resolved
through the tag dictionary. There is no index inside a tile; every row
owned by a selected tile is decoded and tested.

The engine holds no mutable state. Store calls run in worker threads via
``asyncio.to_thread`` so concurrent queries only contend for pool
connections.

Example:
    >>> engine = SpatialQueryEngine.from_settings(store, tags, settings)
    >>> await engine.resolve(Coordinate(lat=45.81, lng=15.97))
    {'building': ['yes'], 'amenity': ['cafe']}
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from worldtags.db import models as db_models
from worldtags.services import codec as blob_codec
from worldtags.services import geometry
from worldtags.services import projection as projections

if TYPE_CHECKING:
    from worldtags.core import config
    from worldtags.db import database
    from worldtags.services import tag_dictionary


class SpatialQueryEngine:
    """Answers "which tags apply here" for single coordinates.

    Args:
        store: Tile store to read from.
        tags: Dictionary resolving feature pairs to labels.
        projection: Projection matching the stored tile coordinates.
        node_distance: Inclusive match radius for nodes.
        way_distance: Inclusive match distance for ways.
        codec: Blob codec for the point and feature columns.
    """

    def __init__(
        self,
        store: database.TileStoreProtocol,
        tags: tag_dictionary.TagDictionary,
        *,
        projection: projections.Projection,
        node_distance: float,
        way_distance: float,
        codec: blob_codec.GeometryCodec | None = None,
    ) -> None:
        if node_distance < 0 or way_distance < 0:
            raise ValueError("Match distances must not be negative")
        self.store = store
        self.tags = tags
        self.projection = projection
        self.node_distance = node_distance
        self.way_distance = way_distance
        self.codec = codec or blob_codec.GeometryCodec()

    @classmethod
    def from_settings(
        cls,
        store: database.TileStoreProtocol,
        tags: tag_dictionary.TagDictionary,
        settings: config.Settings,
    ) -> SpatialQueryEngine:
        return cls(
            store,
            tags,
            projection=projections.get_projection(settings.projection),
            node_distance=settings.node_distance,
            way_distance=settings.way_distance,
        )

    async def matching_features(
        self, coord: db_models.Coordinate
    ) -> set[db_models.FeaturePair]:
        """Collect the feature pairs of every geometry matching ``coord``.

        Raises:
            StorageError: If any store read fails; the query is aborted.
            MalformedBlobError: If a stored blob is corrupt.
        """
        point = self.projection.project(coord.lng, coord.lat)
        tiles = await asyncio.to_thread(self.store.tiles_containing, point)
        per_tile = await asyncio.gather(
            *(self._tile_features(tile.id, point) for tile in tiles)
        )
        features: set[db_models.FeaturePair] = set()
        for tile_features in per_tile:
            features |= tile_features
        return features

    async def resolve(self, coord: db_models.Coordinate) -> dict[str, list[str]]:
        """Return the tags present at ``coord`` as ``{key: [values]}``.

        Pairs are resolved in sorted order so the value lists are
        deterministic. An empty mapping means nothing matched.

        Raises:
            StorageError: If any store read fails.
            MalformedBlobError: If a stored blob is corrupt.
            TagResolutionError: If a stored pair is outside the dictionary.
        """
        features = await self.matching_features(coord)
        return self.tags.lookup_many(sorted(features))

    async def _tile_features(
        self, tile_id: int, point: db_models.Point
    ) -> set[db_models.FeaturePair]:
        areas, nodes, ways = await asyncio.gather(
            asyncio.to_thread(self.store.areas_for_tile, tile_id),
            asyncio.to_thread(self.store.nodes_for_tile, tile_id),
            asyncio.to_thread(self.store.ways_for_tile, tile_id),
        )

        features: set[db_models.FeaturePair] = set()
        for area in areas:
            polygon = self.codec.decode_points(area.points)
            if geometry.contains_point(polygon, point):
                features.update(self.codec.decode_features(area.features))

        for node in nodes:
            distance = geometry.point_distance(
                point, db_models.Point(node.x, node.y)
            )
            if distance <= self.node_distance:
                features.update(self.codec.decode_features(node.features))

        for way in ways:
            polyline = self.codec.decode_points(way.points)
            if polyline and (
                geometry.distance_to(polyline, point) <= self.way_distance
            ):
                features.update(self.codec.decode_features(way.features))

        return features
