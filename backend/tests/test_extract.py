"""Tests for reading parser tile dumps.

This module verifies:
    - conversion of a dump into tile descriptors in file order,
    - rejection of dumps produced for other parameters,
    - errors for unreadable and malformed files.

See Also:
    - backend/worldtags/services/extract.py for the implementation.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

from worldtags.db import models as db_models
from worldtags.services import extract

if TYPE_CHECKING:
    import pathlib

CENTER = db_models.Coordinate(lat=45.81, lng=15.97)


def _dump(**overrides: Any) -> dict[str, Any]:
    dump: dict[str, Any] = {
        "zoom": 16,
        "center": {"lat": 45.81, "lng": 15.97},
        "rows": 2,
        "cols": 1,
        "tiles": [
            {
                "min": [0.0, 0.0],
                "max": [10.0, 10.0],
                "areas": [
                    {"points": [[1, 1], [9, 1], [9, 9]], "features": [[0, 0]]}
                ],
                "nodes": [{"point": [5, 5], "features": [[1, 0], [1, 1]]}],
                "ways": [{"points": [[0, 2], [10, 2]]}],
            },
            {"min": [10.0, 0.0], "max": [20.0, 10.0]},
        ],
    }
    dump.update(overrides)
    return dump


def _write(tmp_path: pathlib.Path, payload: object) -> pathlib.Path:
    path = tmp_path / "tiles.json"
    path.write_text(json.dumps(payload))
    return path


def _extract(path: pathlib.Path, **overrides: Any) -> list[db_models.TileDescriptor]:
    params: dict[str, Any] = {"zoom": 16, "center": CENTER, "rows": 2, "cols": 1}
    params.update(overrides)
    return list(extract.TileDumpExtractor().extract(path, **params))


def test_extract_tiles(tmp_path: pathlib.Path) -> None:
    """Test that tiles come back as descriptors in file order."""
    tiles = _extract(_write(tmp_path, _dump()))
    assert len(tiles) == 2
    first, second = tiles
    assert first.min == db_models.Point(0.0, 0.0)
    assert first.max == db_models.Point(10.0, 10.0)
    assert first.areas[0].points == (
        db_models.Point(1, 1),
        db_models.Point(9, 1),
        db_models.Point(9, 9),
    )
    assert first.areas[0].features == (db_models.FeaturePair(0, 0),)
    assert first.nodes[0].point == db_models.Point(5, 5)
    assert first.nodes[0].features == (
        db_models.FeaturePair(1, 0),
        db_models.FeaturePair(1, 1),
    )
    assert first.ways[0].features == ()
    assert second.min == db_models.Point(10.0, 0.0)
    assert (second.areas, second.nodes, second.ways) == ([], [], [])


def test_center_within_tolerance(tmp_path: pathlib.Path) -> None:
    """Test that float noise in the recorded center is accepted."""
    path = _write(tmp_path, _dump(center={"lat": 45.81 + 1e-12, "lng": 15.97}))
    assert len(_extract(path)) == 2


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"zoom": 15}, "zoom"),
        ({"rows": 32}, "grid"),
        ({"center": db_models.Coordinate(lat=0.0, lng=0.0)}, "center"),
    ],
)
def test_header_mismatch(
    tmp_path: pathlib.Path, overrides: dict[str, Any], message: str
) -> None:
    """Test that a dump is refused for parameters it was not made with."""
    path = _write(tmp_path, _dump())
    with pytest.raises(extract.ExtractionError, match=message):
        extract.TileDumpExtractor().extract(
            path,
            **{"zoom": 16, "center": CENTER, "rows": 2, "cols": 1, **overrides},
        )


def test_mismatch_raised_before_iteration(tmp_path: pathlib.Path) -> None:
    """Test that header errors surface when extract is called."""
    path = _write(tmp_path, _dump(zoom=3))
    extractor = extract.TileDumpExtractor()
    with pytest.raises(extract.ExtractionError):
        extractor.extract(path, zoom=16, center=CENTER, rows=2, cols=1)


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"zoom": 16},
        _dump(tiles=[{"min": [0, 0]}]),
        _dump(
            tiles=[
                {
                    "min": [0, 0],
                    "max": [1, 1],
                    "nodes": [{"point": [0, 0], "features": [[-1, 0]]}],
                }
            ]
        ),
        _dump(rows=0),
    ],
)
def test_malformed_dump(tmp_path: pathlib.Path, payload: object) -> None:
    """Test that structurally invalid dumps raise ExtractionError."""
    path = _write(tmp_path, payload)
    with pytest.raises(extract.ExtractionError, match="Malformed"):
        _extract(path)


def test_invalid_json(tmp_path: pathlib.Path) -> None:
    """Test that a file that is not JSON raises ExtractionError."""
    path = tmp_path / "tiles.json"
    path.write_text("{not json")
    with pytest.raises(extract.ExtractionError, match="Malformed"):
        _extract(path)


def test_missing_file(tmp_path: pathlib.Path) -> None:
    """Test that a missing dump raises ExtractionError."""
    with pytest.raises(extract.ExtractionError, match="Cannot read"):
        _extract(tmp_path / "missing.json")
