"""Fixed-width binary codec for geometry and feature blobs.

Points and feature pairs are stored as opaque ``bytea`` columns. Each blob
is a plain concatenation of fixed-width records in little-endian byte order,
with no header, no padding and no length prefix:

- point: two IEEE-754 float64 values ``(x, y)``, 16 bytes (``<dd``);
- feature pair: two unsigned 32-bit integers ``(key, value)``, 8 bytes
  (``<II``).

The byte order is fixed rather than native so blobs written on one machine
decode identically on any other. Little-endian matches the layout of blobs
produced by earlier x86-64 writers, so existing rows stay readable.

Decoding a blob whose length is not a whole number of records raises
``MalformedBlobError``; nothing is silently truncated. The codec does no
range validation of decoded values: callers own the semantics.

Example:
    Round-trip a polyline:
        >>> from worldtags.db.models import Point
        >>> from worldtags.services.codec import GeometryCodec
        >>> codec = GeometryCodec()
        >>> blob = codec.encode_points([Point(1.0, 2.0), Point(3.0, 4.0)])
        >>> len(blob)
        32
        >>> codec.decode_points(blob)
        [Point(x=1.0, y=2.0), Point(x=3.0, y=4.0)]
"""

from __future__ import annotations

import dataclasses
import struct
from typing import TYPE_CHECKING, Any

from worldtags.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

BYTE_ORDER = "little"


class MalformedBlobError(ValueError):
    """Raised when a blob is not a whole number of fixed-width records."""


@dataclasses.dataclass(frozen=True)
class RecordLayout[T]:
    """Binary layout of one record type.

    Attributes:
        name: Human-readable record name used in error messages.
        packer: Compiled ``struct`` format for a single record.
        factory: Builds a record from the unpacked field tuple.
    """

    name: str
    packer: struct.Struct
    factory: Callable[..., T]

    @property
    def width(self) -> int:
        return self.packer.size


POINT_LAYOUT = RecordLayout("point", struct.Struct("<dd"), db_models.Point)
FEATURE_LAYOUT = RecordLayout(
    "feature pair", struct.Struct("<II"), db_models.FeaturePair
)


def encode[T](records: Iterable[Any], layout: RecordLayout[T]) -> bytes:
    """Pack ``records`` back to back using ``layout``.

    Args:
        records: Tuples (or named tuples) matching the layout's fields.
        layout: Record layout to pack with.

    Returns:
        Blob of exactly ``len(records) * layout.width`` bytes.

    Raises:
        ValueError: If a field cannot be represented by the layout, for
            example a negative feature index.
    """
    buffer = bytearray()
    for record in records:
        try:
            buffer += layout.packer.pack(*record)
        except struct.error as exc:
            raise ValueError(
                f"Cannot pack {layout.name} {record!r}: {exc}"
            ) from exc
    return bytes(buffer)


def decode[T](blob: bytes | memoryview, layout: RecordLayout[T]) -> list[T]:
    """Unpack a blob into records of ``layout``.

    Args:
        blob: Raw column value; ``memoryview`` as returned by psycopg2 is
            accepted.
        layout: Record layout to unpack with.

    Returns:
        Records in stored order.

    Raises:
        MalformedBlobError: If the blob length is not a multiple of the
            layout's record width.
    """
    data = bytes(blob)
    if len(data) % layout.width:
        raise MalformedBlobError(
            f"{layout.name} blob of {len(data)} bytes is not a multiple "
            f"of the {layout.width}-byte record width"
        )
    return [layout.factory(*fields) for fields in layout.packer.iter_unpack(data)]


class GeometryCodec:
    """Encodes and decodes the point and feature columns of the store.

    The store and the query engine receive a codec instance rather than
    calling the module functions directly, so the on-disk representation
    can be swapped without touching either of them.
    """

    point_layout: RecordLayout[db_models.Point] = POINT_LAYOUT
    feature_layout: RecordLayout[db_models.FeaturePair] = FEATURE_LAYOUT

    def encode_points(self, points: Iterable[db_models.Point]) -> bytes:
        return encode(points, self.point_layout)

    def decode_points(self, blob: bytes | memoryview) -> list[db_models.Point]:
        return decode(blob, self.point_layout)

    def encode_features(
        self, features: Iterable[db_models.FeaturePair]
    ) -> bytes:
        return encode(features, self.feature_layout)

    def decode_features(
        self, blob: bytes | memoryview
    ) -> list[db_models.FeaturePair]:
        return decode(blob, self.feature_layout)
