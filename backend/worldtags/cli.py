"""
Command-line interface for worldtags.

Provides commands for serving the lookup API, ingesting a parsed tile dump
into the tile store, and running one-off coordinate lookups.
"""

import argparse
import asyncio
import json
import logging
import pathlib
import sys

import uvicorn

from worldtags.core import config
from worldtags.core import logging as log_setup
from worldtags.db import database
from worldtags.db import models as db_models
from worldtags.services import (
    codec,
    extract,
    ingest_tiles,
    spatial_query,
    tag_dictionary,
)

logger = logging.getLogger(__name__)

DEFAULT_ZOOM = 16
DEFAULT_GRID = 32


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="worldtags",
        description="Tile-partitioned world data store and tag lookup service",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "start",
        help="Serve the lookup API on the configured address",
    )

    ingest_parser = subparsers.add_parser(
        "ingest",
        help="Ingest a tile dump produced by the map-data parser",
    )
    ingest_parser.add_argument(
        "--file",
        type=pathlib.Path,
        required=True,
        help="Tile dump (JSON) to ingest",
    )
    ingest_parser.add_argument(
        "--center-lat",
        type=float,
        required=True,
        help="Latitude of the center point the dump was produced for",
    )
    ingest_parser.add_argument(
        "--center-lng",
        type=float,
        required=True,
        help="Longitude of the center point the dump was produced for",
    )
    ingest_parser.add_argument(
        "--zoom",
        type=int,
        default=DEFAULT_ZOOM,
        help=f"Zoom level of the dump (default: {DEFAULT_ZOOM})",
    )
    ingest_parser.add_argument(
        "--rows",
        type=int,
        default=DEFAULT_GRID,
        help=f"Number of tile rows (default: {DEFAULT_GRID})",
    )
    ingest_parser.add_argument(
        "--cols",
        type=int,
        default=DEFAULT_GRID,
        help=f"Number of tile columns (default: {DEFAULT_GRID})",
    )
    ingest_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Tiles per transaction (default: INGEST_BATCH_SIZE setting)",
    )
    ingest_parser.add_argument(
        "--max-concurrent-batches",
        type=int,
        default=None,
        help="Batches in flight (default: INGEST_MAX_CONCURRENT_BATCHES setting)",
    )

    lookup_parser = subparsers.add_parser(
        "lookup",
        help="Print the tags present at a coordinate",
    )
    lookup_parser.add_argument("--lat", type=float, required=True)
    lookup_parser.add_argument("--lng", type=float, required=True)

    return parser


def cmd_start(args: argparse.Namespace, settings: config.Settings) -> int:
    """Run the API server."""
    uvicorn.run(
        "worldtags.main:app",
        host=settings.listen_address,
        port=settings.listen_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def cmd_ingest(args: argparse.Namespace, settings: config.Settings) -> int:
    """Ingest a tile dump; returns 1 if any batch was rolled back."""
    updates = {}
    if args.batch_size is not None:
        updates["ingest_batch_size"] = args.batch_size
    if args.max_concurrent_batches is not None:
        updates["ingest_max_concurrent_batches"] = args.max_concurrent_batches
    if updates:
        settings = settings.model_copy(update=updates)

    tags = tag_dictionary.get_tag_dictionary(settings.tags_file)
    try:
        tiles = extract.TileDumpExtractor().extract(
            args.file,
            zoom=args.zoom,
            center=db_models.Coordinate(lat=args.center_lat, lng=args.center_lng),
            rows=args.rows,
            cols=args.cols,
        )
    except extract.ExtractionError as exc:
        logger.error("%s", exc)
        return 1

    store = database.get_tile_store(settings)
    try:
        pipeline = ingest_tiles.IngestionPipeline.from_settings(
            store, tags, settings
        )
        report = asyncio.run(pipeline.ingest(tiles))
    finally:
        store.close()

    for failure in report.failures:
        logger.error("Re-run required: %s", failure)
    print(
        f"Ingested {report.tiles_inserted} tiles, {report.areas_inserted} areas, "
        f"{report.nodes_inserted} nodes, {report.ways_inserted} ways "
        f"in {len(report.batches)} batches; {len(report.failures)} failed"
    )
    return 0 if report.ok else 1


def cmd_lookup(args: argparse.Namespace, settings: config.Settings) -> int:
    """Resolve one coordinate and print the tag mapping as JSON."""
    tags = tag_dictionary.get_tag_dictionary(settings.tags_file)
    store = database.get_tile_store(settings)
    try:
        engine = spatial_query.SpatialQueryEngine.from_settings(
            store, tags, settings
        )
        result = asyncio.run(
            engine.resolve(db_models.Coordinate(lat=args.lat, lng=args.lng))
        )
    finally:
        store.close()

    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


COMMANDS = {
    "start": cmd_start,
    "ingest": cmd_ingest,
    "lookup": cmd_lookup,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    settings = config.get_settings()
    log_setup.configure_logging(settings.log_level)

    try:
        return COMMANDS[args.command](args, settings)
    except database.StorageError as exc:
        logger.error("Tile store error: %s", exc)
        return 1
    except (codec.MalformedBlobError, tag_dictionary.TagResolutionError) as exc:
        logger.error("Stored tile data is inconsistent: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
