"""Tile descriptors from a map-data parser dump.

Parsing raw map data into tiles happens outside this service. The parser
writes its result as a JSON document, which this module turns into
``TileDescriptor`` objects for the ingestion pipeline. Coordinates are
already projected; feature pairs are ``[key_index, value_index]``::

    {
      "zoom": 16,
      "center": {"lat": 45.81, "lng": 15.97},
      "rows": 32,
      "cols": 32,
      "tiles": [
        {
          "min": [1777600.0, 5749000.0],
          "max": [1778211.5, 5749611.5],
          "areas": [{"points": [[x, y], ...], "features": [[0, 0]]}],
          "nodes": [{"point": [x, y], "features": [[1, 0]]}],
          "ways": [{"points": [[x, y], ...], "features": [[5, 3]]}]
        }
      ]
    }

The header records the parameters the parser ran with. A dump is only
accepted for the parameters it was produced with, which catches ingesting
the wrong file for a region.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Protocol

import pydantic

from worldtags.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterator

CENTER_TOLERANCE = 1e-9


class ExtractionError(ValueError):
    """Raised when a dump cannot be read or does not match the request."""


class DatasetExtractor(Protocol):
    def extract(
        self,
        source: pathlib.Path,
        *,
        zoom: int,
        center: db_models.Coordinate,
        rows: int,
        cols: int,
    ) -> Iterator[db_models.TileDescriptor]: ...


_XY = tuple[float, float]
_Pair = tuple[pydantic.NonNegativeInt, pydantic.NonNegativeInt]


class _CenterModel(pydantic.BaseModel):
    lat: float
    lng: float


class _GeometryModel(pydantic.BaseModel):
    points: list[_XY]
    features: list[_Pair] = []


class _NodeModel(pydantic.BaseModel):
    point: _XY
    features: list[_Pair] = []


class _TileModel(pydantic.BaseModel):
    min: _XY
    max: _XY
    areas: list[_GeometryModel] = []
    nodes: list[_NodeModel] = []
    ways: list[_GeometryModel] = []


class _DumpModel(pydantic.BaseModel):
    zoom: int
    center: _CenterModel
    rows: pydantic.PositiveInt
    cols: pydantic.PositiveInt
    tiles: list[_TileModel]


def _features(pairs: list[_Pair]) -> tuple[db_models.FeaturePair, ...]:
    return tuple(db_models.FeaturePair(key, value) for key, value in pairs)


def _geometry(model: _GeometryModel) -> db_models.FeatureGeometry:
    return db_models.FeatureGeometry(
        points=tuple(db_models.Point(x, y) for x, y in model.points),
        features=_features(model.features),
    )


def _tile(model: _TileModel) -> db_models.TileDescriptor:
    return db_models.TileDescriptor(
        min=db_models.Point(*model.min),
        max=db_models.Point(*model.max),
        areas=[_geometry(area) for area in model.areas],
        nodes=[
            db_models.FeatureNode(
                point=db_models.Point(*node.point),
                features=_features(node.features),
            )
            for node in model.nodes
        ],
        ways=[_geometry(way) for way in model.ways],
    )


class TileDumpExtractor:
    """Reads the JSON tile dump written by the map-data parser."""

    def extract(
        self,
        source: pathlib.Path,
        *,
        zoom: int,
        center: db_models.Coordinate,
        rows: int,
        cols: int,
    ) -> Iterator[db_models.TileDescriptor]:
        """Load and check ``source``, then return its tiles lazily.

        Args:
            source: Path to the JSON dump.
            zoom: Zoom level the dump must have been produced at.
            center: Center coordinate the dump must have been produced for.
            rows: Grid rows the dump must declare.
            cols: Grid columns the dump must declare.

        Returns:
            Iterator over the tile descriptors in the dump's order.

        Raises:
            ExtractionError: If the file is unreadable, malformed, or its
                header does not match the requested parameters.
        """
        try:
            dump = _DumpModel.model_validate_json(source.read_bytes())
        except OSError as exc:
            raise ExtractionError(f"Cannot read {source}: {exc}") from exc
        except pydantic.ValidationError as exc:
            raise ExtractionError(f"Malformed tile dump {source}: {exc}") from exc

        mismatches = []
        if dump.zoom != zoom:
            mismatches.append(f"zoom {dump.zoom} != {zoom}")
        if (dump.rows, dump.cols) != (rows, cols):
            mismatches.append(
                f"grid {dump.rows}x{dump.cols} != {rows}x{cols}"
            )
        if not (
            math.isclose(dump.center.lat, center.lat, abs_tol=CENTER_TOLERANCE)
            and math.isclose(dump.center.lng, center.lng, abs_tol=CENTER_TOLERANCE)
        ):
            mismatches.append(
                f"center ({dump.center.lat}, {dump.center.lng}) != "
                f"({center.lat}, {center.lng})"
            )
        if mismatches:
            raise ExtractionError(
                f"Tile dump {source} does not match request: "
                + "; ".join(mismatches)
            )

        return (_tile(tile) for tile in dump.tiles)
