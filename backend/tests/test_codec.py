"""Tests for the fixed-width geometry and feature blob codec.

This module verifies the stored byte layout (little-endian float64 pairs
for points, little-endian uint32 pairs for feature pairs), lossless
decoding, and that blobs which are not a whole number of records are
rejected rather than truncated.

See Also:
    - backend/worldtags/services/codec.py for the implementation.
"""

from __future__ import annotations

import struct

import pytest

from worldtags.db import models as db_models
from worldtags.services import codec


def test_point_layout_is_little_endian_float64() -> None:
    """Test that a point is stored as two little-endian doubles."""
    blob = codec.GeometryCodec().encode_points([db_models.Point(1.5, -2.25)])
    assert blob == struct.pack("<d", 1.5) + struct.pack("<d", -2.25)
    assert len(blob) == codec.POINT_LAYOUT.width == 16


def test_feature_layout_is_little_endian_uint32() -> None:
    """Test that a feature pair is stored as two little-endian uint32."""
    blob = codec.GeometryCodec().encode_features([db_models.FeaturePair(1, 258)])
    assert blob == b"\x01\x00\x00\x00\x02\x01\x00\x00"
    assert codec.FEATURE_LAYOUT.width == 8


def test_points_decode_in_order() -> None:
    """Test that decoding restores every point in stored order."""
    geometry_codec = codec.GeometryCodec()
    points = [
        db_models.Point(1.0, 1.0),
        db_models.Point(9.0, 1.0),
        db_models.Point(9.0, 9.0),
        db_models.Point(1.0, 9.0),
    ]
    decoded = geometry_codec.decode_points(geometry_codec.encode_points(points))
    assert decoded == points
    assert all(isinstance(point, db_models.Point) for point in decoded)


def test_decode_accepts_memoryview() -> None:
    """Test that bytea values returned as memoryview decode."""
    geometry_codec = codec.GeometryCodec()
    blob = geometry_codec.encode_features([db_models.FeaturePair(3, 4)])
    assert geometry_codec.decode_features(memoryview(blob)) == [
        db_models.FeaturePair(3, 4)
    ]


def test_empty_blob_decodes_to_empty_list() -> None:
    """Test that an empty blob is a valid, empty sequence."""
    assert codec.GeometryCodec().decode_features(b"") == []
    assert codec.GeometryCodec().encode_points([]) == b""


@pytest.mark.parametrize("length", [1, 15, 17, 33])
def test_decode_points_rejects_partial_record(length: int) -> None:
    """Test that a point blob with a trailing partial record fails."""
    with pytest.raises(codec.MalformedBlobError):
        codec.GeometryCodec().decode_points(b"\x00" * length)


def test_decode_features_rejects_partial_record() -> None:
    """Test that a feature blob of 12 bytes is not truncated to one pair."""
    with pytest.raises(codec.MalformedBlobError, match="12 bytes"):
        codec.GeometryCodec().decode_features(b"\x00" * 12)


def test_encode_rejects_unrepresentable_feature() -> None:
    """Test that a negative feature index cannot be packed."""
    with pytest.raises(ValueError, match="feature pair"):
        codec.GeometryCodec().encode_features([db_models.FeaturePair(-1, 0)])
