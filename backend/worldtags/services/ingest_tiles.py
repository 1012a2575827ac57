"""Bulk ingestion of parsed tile descriptors into the tile store.

The pipeline splits the ordered tile sequence into fixed-size batches and
writes each batch in its own store transaction:

1. validate and encode every tile, area, node and way of the batch;
2. insert the batch's tiles, in input order, receiving their identifiers;
3. patch each pending geometry row with the identifier of its source tile;
4. insert the ways, nodes and areas;
5. commit, or roll the whole batch back on any failure.

Batches run concurrently, at most ``max_concurrent_batches`` at a time. The
next batch is only cut from the input once a slot is free, so a lazily
produced tile sequence is consumed no faster than it can be written.

A failed batch never affects the others. Failures are collected into the
returned ``IngestReport`` as ``IngestionError`` instances; the affected
batches must be re-run in full. Ingestion is additive: running it twice over
the same input stores every row twice.

Example:
    >>> pipeline = IngestionPipeline.from_settings(store, tags, settings)
    >>> report = asyncio.run(pipeline.ingest(tiles))
    >>> report.ok, report.tiles_inserted
    (True, 1024)
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from typing import TYPE_CHECKING

from worldtags.db import database
from worldtags.db import models as db_models
from worldtags.services import codec as blob_codec

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from worldtags.core import config
    from worldtags.services import tag_dictionary

logger = logging.getLogger(__name__)


class InvalidTileError(ValueError):
    """Raised when a tile descriptor violates a store invariant."""


class IngestionError(RuntimeError):
    """Raised for a batch whose transaction was rolled back.

    Attributes:
        batch_index: Zero-based position of the batch in the input.
        tile_count: Number of tiles in the failed batch.
    """

    def __init__(self, batch_index: int, tile_count: int, message: str) -> None:
        super().__init__(f"Batch {batch_index} ({tile_count} tiles): {message}")
        self.batch_index = batch_index
        self.tile_count = tile_count


@dataclasses.dataclass(frozen=True)
class BatchResult:
    batch_index: int
    tiles: int
    areas: int
    nodes: int
    ways: int


@dataclasses.dataclass
class IngestReport:
    """Outcome of one ingestion run.

    Attributes:
        batches: Committed batches, ordered by batch index.
        failures: Rolled-back batches, ordered by batch index.
    """

    batches: list[BatchResult] = dataclasses.field(default_factory=list)
    failures: list[IngestionError] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def tiles_inserted(self) -> int:
        return sum(batch.tiles for batch in self.batches)

    @property
    def areas_inserted(self) -> int:
        return sum(batch.areas for batch in self.batches)

    @property
    def nodes_inserted(self) -> int:
        return sum(batch.nodes for batch in self.batches)

    @property
    def ways_inserted(self) -> int:
        return sum(batch.ways for batch in self.batches)


@dataclasses.dataclass
class _PendingBatch:
    tiles: list[db_models.TileInsert] = dataclasses.field(default_factory=list)
    areas: list[tuple[int, db_models.AreaInsert]] = dataclasses.field(
        default_factory=list
    )
    nodes: list[tuple[int, db_models.NodeInsert]] = dataclasses.field(
        default_factory=list
    )
    ways: list[tuple[int, db_models.WayInsert]] = dataclasses.field(
        default_factory=list
    )


class IngestionPipeline:
    """Writes tile descriptors to a store in bounded, transactional batches.

    Args:
        store: Destination tile store.
        tags: Dictionary every feature pair must resolve against.
        batch_size: Tiles per transaction.
        max_concurrent_batches: Upper bound on batches in flight.
        retries: Extra attempts for a batch failing with ``StorageError``.
        retry_backoff_seconds: Delay before the first retry, doubled for
            each further one.
        codec: Blob codec for the point and feature columns.
    """

    def __init__(
        self,
        store: database.TileStoreProtocol,
        tags: tag_dictionary.TagDictionary,
        *,
        batch_size: int = 25,
        max_concurrent_batches: int = 4,
        retries: int = 0,
        retry_backoff_seconds: float = 0.5,
        codec: blob_codec.GeometryCodec | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_concurrent_batches < 1:
            raise ValueError("max_concurrent_batches must be at least 1")
        self.store = store
        self.tags = tags
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.codec = codec or blob_codec.GeometryCodec()

    @classmethod
    def from_settings(
        cls,
        store: database.TileStoreProtocol,
        tags: tag_dictionary.TagDictionary,
        settings: config.Settings,
    ) -> IngestionPipeline:
        return cls(
            store,
            tags,
            batch_size=settings.ingest_batch_size,
            max_concurrent_batches=settings.ingest_max_concurrent_batches,
            retries=settings.ingest_batch_retries,
            retry_backoff_seconds=settings.ingest_retry_backoff_seconds,
        )

    async def ingest(
        self, tiles: Iterable[db_models.TileDescriptor]
    ) -> IngestReport:
        """Ingest ``tiles`` and report committed and failed batches.

        Args:
            tiles: Tile descriptors in the order their ids should be
                generated.

        Returns:
            Report listing each committed batch and each rolled-back one.
        """
        slots = asyncio.Semaphore(self.max_concurrent_batches)
        tasks: list[asyncio.Task[BatchResult | IngestionError]] = []
        for batch_index, batch in enumerate(
            itertools.batched(tiles, self.batch_size)
        ):
            await slots.acquire()
            tasks.append(
                asyncio.create_task(self._run_batch(batch_index, batch, slots))
            )

        report = IngestReport()
        for outcome in await asyncio.gather(*tasks):
            if isinstance(outcome, IngestionError):
                report.failures.append(outcome)
            else:
                report.batches.append(outcome)
        logger.info(
            "Ingestion finished: %d batches committed, %d failed, %d tiles",
            len(report.batches),
            len(report.failures),
            report.tiles_inserted,
        )
        return report

    async def _run_batch(
        self,
        batch_index: int,
        batch: Sequence[db_models.TileDescriptor],
        slots: asyncio.Semaphore,
    ) -> BatchResult | IngestionError:
        try:
            try:
                pending = self._prepare(batch)
            except InvalidTileError as exc:
                logger.error("Batch %d rejected: %s", batch_index, exc)
                return IngestionError(batch_index, len(batch), str(exc))

            attempt = 0
            while True:
                try:
                    result = await asyncio.to_thread(
                        self._write, batch_index, pending
                    )
                except database.StorageError as exc:
                    if attempt >= self.retries:
                        logger.error(
                            "Batch %d rolled back: %s", batch_index, exc
                        )
                        return IngestionError(batch_index, len(batch), str(exc))
                    delay = self.retry_backoff_seconds * 2**attempt
                    logger.warning(
                        "Batch %d failed (attempt %d), retrying in %.2fs: %s",
                        batch_index,
                        attempt + 1,
                        delay,
                        exc,
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                except Exception as exc:
                    logger.exception("Batch %d rolled back", batch_index)
                    return IngestionError(batch_index, len(batch), str(exc))

                logger.info(
                    "Batch %d committed: %d tiles, %d areas, %d nodes, %d ways",
                    batch_index,
                    result.tiles,
                    result.areas,
                    result.nodes,
                    result.ways,
                )
                return result
        finally:
            slots.release()

    def _prepare(
        self, batch: Sequence[db_models.TileDescriptor]
    ) -> _PendingBatch:
        """Validate and encode a batch; rows reference tiles by position."""
        pending = _PendingBatch()
        for tile_index, tile in enumerate(batch):
            if tile.min.x > tile.max.x or tile.min.y > tile.max.y:
                raise InvalidTileError(
                    f"Tile {tile_index} has inverted bounds "
                    f"{tile.min} - {tile.max}"
                )
            pending.tiles.append(
                db_models.TileInsert(
                    min_x=tile.min.x,
                    min_y=tile.min.y,
                    max_x=tile.max.x,
                    max_y=tile.max.y,
                )
            )
            for area in tile.areas:
                pending.areas.append(
                    (tile_index, db_models.AreaInsert(*self._encode(area)))
                )
            for way in tile.ways:
                pending.ways.append(
                    (tile_index, db_models.WayInsert(*self._encode(way)))
                )
            for node in tile.nodes:
                pending.nodes.append(
                    (
                        tile_index,
                        db_models.NodeInsert(
                            x=node.point.x,
                            y=node.point.y,
                            features=self._encode_features(node.features),
                        ),
                    )
                )
        return pending

    def _encode(self, geometry: db_models.FeatureGeometry) -> tuple[bytes, bytes]:
        if len(geometry.points) < 2:
            raise InvalidTileError(
                f"Geometry needs at least 2 points, got {len(geometry.points)}"
            )
        return (
            self.codec.encode_points(geometry.points),
            self._encode_features(geometry.features),
        )

    def _encode_features(
        self, features: Sequence[db_models.FeaturePair]
    ) -> bytes:
        for pair in features:
            if not self.tags.contains(pair):
                raise InvalidTileError(
                    f"Feature pair {tuple(pair)} is not in the tag dictionary"
                )
        return self.codec.encode_features(features)

    def _write(self, batch_index: int, pending: _PendingBatch) -> BatchResult:
        """Write one prepared batch inside a single store transaction."""
        with self.store.transaction() as tx:
            tile_ids = tx.insert_tiles(pending.tiles)
            if len(tile_ids) != len(pending.tiles):
                raise database.StorageError(
                    f"Expected {len(pending.tiles)} tile ids, "
                    f"got {len(tile_ids)}"
                )
            tx.insert_ways(
                [
                    dataclasses.replace(row, tile_id=tile_ids[index])
                    for index, row in pending.ways
                ]
            )
            tx.insert_nodes(
                [
                    dataclasses.replace(row, tile_id=tile_ids[index])
                    for index, row in pending.nodes
                ]
            )
            tx.insert_areas(
                [
                    dataclasses.replace(row, tile_id=tile_ids[index])
                    for index, row in pending.areas
                ]
            )
        return BatchResult(
            batch_index=batch_index,
            tiles=len(pending.tiles),
            areas=len(pending.areas),
            nodes=len(pending.nodes),
            ways=len(pending.ways),
        )
