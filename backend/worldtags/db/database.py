"""Tile store protocol and its in-memory and PostgreSQL backends.

The store holds four tables:

- ``tiles``: id plus inclusive bounding box (``min_x <= max_x`` and
  ``min_y <= max_y`` are enforced by CHECK constraints);
- ``ways`` / ``areas``: owning tile, point blob and feature blob;
- ``nodes``: owning tile, coordinates and feature blob.

Rows are only ever added, in batches, through ``TileStoreProtocol.transaction``;
the read side serves the spatial query engine. Both backends are synchronous;
async callers wrap them in ``asyncio.to_thread``.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extras
import psycopg2.pool

from worldtags.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from worldtags.core import config

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the tile store cannot complete an operation.

    Covers lost connections, constraint violations and malformed queries.
    The store never retries internally.
    """


class TileStoreTransaction(Protocol):
    """Write handle valid for the lifetime of one store transaction."""

    def insert_tiles(
        self, tiles: Sequence[db_models.TileInsert]
    ) -> list[int]: ...

    def insert_ways(self, ways: Sequence[db_models.WayInsert]) -> None: ...

    def insert_nodes(self, nodes: Sequence[db_models.NodeInsert]) -> None: ...

    def insert_areas(self, areas: Sequence[db_models.AreaInsert]) -> None: ...


class TileStoreProtocol(Protocol):
    """Protocol interface for persisting and querying tiles.

    ``transaction()`` commits when its block exits normally and rolls back
    everything written inside it otherwise. ``insert_tiles`` returns the
    generated identifiers in input order.
    """

    def transaction(
        self,
    ) -> contextlib.AbstractContextManager[TileStoreTransaction]: ...

    def tiles_containing(
        self, point: db_models.Point
    ) -> list[db_models.Tile]: ...

    def areas_for_tile(self, tile_id: int) -> list[db_models.Area]: ...

    def nodes_for_tile(self, tile_id: int) -> list[db_models.Node]: ...

    def ways_for_tile(self, tile_id: int) -> list[db_models.Way]: ...

    def close(self) -> None: ...


def _require_tile_ids(
    rows: Sequence[
        db_models.WayInsert | db_models.AreaInsert | db_models.NodeInsert
    ],
) -> None:
    for row in rows:
        if row.tile_id is None:
            raise StorageError(f"{type(row).__name__} has no owning tile")


class _InMemoryTransaction:
    def __init__(self, store: InMemoryTileStore) -> None:
        self._store = store
        self.tiles: list[db_models.Tile] = []
        self.ways: list[db_models.Way] = []
        self.nodes: list[db_models.Node] = []
        self.areas: list[db_models.Area] = []

    def _check_owner(self, tile_id: int | None) -> int:
        if tile_id is None:
            raise StorageError("Geometry row has no owning tile")
        if tile_id not in self._store._tile_ids and not any(
            tile.id == tile_id for tile in self.tiles
        ):
            raise StorageError(f"Tile {tile_id} does not exist")
        return tile_id

    def insert_tiles(self, tiles: Sequence[db_models.TileInsert]) -> list[int]:
        ids = []
        for tile in tiles:
            if tile.min_x > tile.max_x or tile.min_y > tile.max_y:
                raise StorageError(f"Tile bounds are inverted: {tile!r}")
            tile_id = self._store._next_id("tiles")
            self.tiles.append(
                db_models.Tile(
                    id=tile_id,
                    min_x=tile.min_x,
                    min_y=tile.min_y,
                    max_x=tile.max_x,
                    max_y=tile.max_y,
                )
            )
            ids.append(tile_id)
        return ids

    def insert_ways(self, ways: Sequence[db_models.WayInsert]) -> None:
        for way in ways:
            self.ways.append(
                db_models.Way(
                    id=self._store._next_id("ways"),
                    tile_id=self._check_owner(way.tile_id),
                    points=way.points,
                    features=way.features,
                )
            )

    def insert_nodes(self, nodes: Sequence[db_models.NodeInsert]) -> None:
        for node in nodes:
            self.nodes.append(
                db_models.Node(
                    id=self._store._next_id("nodes"),
                    tile_id=self._check_owner(node.tile_id),
                    x=node.x,
                    y=node.y,
                    features=node.features,
                )
            )

    def insert_areas(self, areas: Sequence[db_models.AreaInsert]) -> None:
        for area in areas:
            self.areas.append(
                db_models.Area(
                    id=self._store._next_id("areas"),
                    tile_id=self._check_owner(area.tile_id),
                    points=area.points,
                    features=area.features,
                )
            )


class InMemoryTileStore(TileStoreProtocol):
    """Simple in-memory store for tests and local development.

    Writes are staged per transaction and applied on commit, so a failed
    block leaves no trace apart from consumed identifiers, as with database
    sequences. Data is lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._lock = threading.Lock()
        self._counters = {
            table: itertools.count(1)
            for table in ("tiles", "ways", "nodes", "areas")
        }
        self._tile_ids: set[int] = set()
        self.tiles: list[db_models.Tile] = []
        self.ways: list[db_models.Way] = []
        self.nodes: list[db_models.Node] = []
        self.areas: list[db_models.Area] = []
        self.transactions_opened = 0
        self.transactions_committed = 0

    def _next_id(self, table: str) -> int:
        with self._lock:
            return next(self._counters[table])

    def _commit(self, tx: _InMemoryTransaction) -> None:
        """Apply a transaction's staged rows atomically."""
        with self._lock:
            self.tiles.extend(tx.tiles)
            self._tile_ids.update(tile.id for tile in tx.tiles)
            self.ways.extend(tx.ways)
            self.nodes.extend(tx.nodes)
            self.areas.extend(tx.areas)
            self.transactions_committed += 1

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_InMemoryTransaction]:
        with self._lock:
            self.transactions_opened += 1
        tx = _InMemoryTransaction(self)
        yield tx
        self._commit(tx)

    def tiles_containing(self, point: db_models.Point) -> list[db_models.Tile]:
        with self._lock:
            return [tile for tile in self.tiles if tile.contains(point)]

    def areas_for_tile(self, tile_id: int) -> list[db_models.Area]:
        with self._lock:
            return [area for area in self.areas if area.tile_id == tile_id]

    def nodes_for_tile(self, tile_id: int) -> list[db_models.Node]:
        with self._lock:
            return [node for node in self.nodes if node.tile_id == tile_id]

    def ways_for_tile(self, tile_id: int) -> list[db_models.Way]:
        with self._lock:
            return [way for way in self.ways if way.tile_id == tile_id]

    def close(self) -> None:
        return None


class _PostgresTransaction:
    def __init__(self, cursor: psycopg2.extensions.cursor) -> None:
        self._cursor = cursor

    def insert_tiles(self, tiles: Sequence[db_models.TileInsert]) -> list[int]:
        if not tiles:
            return []
        rows = psycopg2.extras.execute_values(
            self._cursor,
            "INSERT INTO tiles (min_x, min_y, max_x, max_y) VALUES %s "
            "RETURNING id",
            [PostgresTileStore._tile_to_row(tile) for tile in tiles],
            page_size=len(tiles),
            fetch=True,
        )
        ids = [int(row["id"]) for row in rows]
        if len(ids) != len(tiles):
            raise StorageError(
                f"Inserted {len(tiles)} tiles but received {len(ids)} ids"
            )
        return ids

    def _insert_geometry(
        self,
        table: str,
        rows: Sequence[db_models.WayInsert | db_models.AreaInsert],
    ) -> None:
        if not rows:
            return
        _require_tile_ids(rows)
        psycopg2.extras.execute_values(
            self._cursor,
            f"INSERT INTO {table} (tile, points, features) VALUES %s",  # noqa: S608
            [PostgresTileStore._geometry_to_row(row) for row in rows],
        )

    def insert_ways(self, ways: Sequence[db_models.WayInsert]) -> None:
        self._insert_geometry("ways", ways)

    def insert_areas(self, areas: Sequence[db_models.AreaInsert]) -> None:
        self._insert_geometry("areas", areas)

    def insert_nodes(self, nodes: Sequence[db_models.NodeInsert]) -> None:
        if not nodes:
            return
        _require_tile_ids(nodes)
        psycopg2.extras.execute_values(
            self._cursor,
            "INSERT INTO nodes (tile, x, y, features) VALUES %s",
            [PostgresTileStore._node_to_row(node) for node in nodes],
        )


class PostgresTileStore(TileStoreProtocol):
    """PostgreSQL-backed tile store using a bounded connection pool.

    At most ``db_pool_max_connections`` operations hold a connection at a
    time; further callers block in their worker thread until one is
    returned. The schema is created on initialization if missing.
    """

    CREATE_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS tiles (
      id BIGSERIAL PRIMARY KEY,
      min_x DOUBLE PRECISION NOT NULL,
      max_x DOUBLE PRECISION NOT NULL,
      min_y DOUBLE PRECISION NOT NULL,
      max_y DOUBLE PRECISION NOT NULL,
      CHECK (min_x <= max_x),
      CHECK (min_y <= max_y)
    );
    CREATE TABLE IF NOT EXISTS ways (
      id BIGSERIAL PRIMARY KEY,
      tile BIGINT NOT NULL REFERENCES tiles (id) ON UPDATE CASCADE,
      points BYTEA NOT NULL,
      features BYTEA NOT NULL
    );
    CREATE TABLE IF NOT EXISTS areas (
      id BIGSERIAL PRIMARY KEY,
      tile BIGINT NOT NULL REFERENCES tiles (id) ON UPDATE CASCADE,
      points BYTEA NOT NULL,
      features BYTEA NOT NULL
    );
    CREATE TABLE IF NOT EXISTS nodes (
      id BIGSERIAL PRIMARY KEY,
      tile BIGINT NOT NULL REFERENCES tiles (id) ON UPDATE CASCADE,
      x DOUBLE PRECISION NOT NULL,
      y DOUBLE PRECISION NOT NULL,
      features BYTEA NOT NULL
    );
    CREATE INDEX IF NOT EXISTS ways_tile_idx ON ways (tile);
    CREATE INDEX IF NOT EXISTS areas_tile_idx ON areas (tile);
    CREATE INDEX IF NOT EXISTS nodes_tile_idx ON nodes (tile);
    """

    TILES_CONTAINING_SQL = """
    SELECT id, min_x, min_y, max_x, max_y FROM tiles
    WHERE min_x <= %(x)s AND max_x >= %(x)s
      AND min_y <= %(y)s AND max_y >= %(y)s
    """

    def __init__(self, settings: config.Settings) -> None:
        """Open the connection pool and ensure the schema exists.

        Args:
            settings: Application settings with the database URL and pool
                bounds.

        Raises:
            StorageError: If the database is unreachable.
        """
        self.settings = settings
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                settings.db_pool_min_connections,
                settings.db_pool_max_connections,
                settings.database_url,
            )
        except psycopg2.Error as exc:
            raise StorageError(f"Cannot connect to tile store: {exc}") from exc
        self._slots = threading.BoundedSemaphore(
            settings.db_pool_max_connections
        )
        self._ensure_schema()
        logger.info(
            "Tile store pool ready (%d-%d connections)",
            settings.db_pool_min_connections,
            settings.db_pool_max_connections,
        )

    @contextlib.contextmanager
    def _connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Check a connection out of the pool, waiting for a free slot."""
        with self._slots:
            try:
                conn = self._pool.getconn()
            except psycopg2.Error as exc:
                raise StorageError(f"Cannot acquire connection: {exc}") from exc
            try:
                yield conn
            finally:
                self._pool.putconn(conn, close=bool(conn.closed))

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            try:
                with conn, conn.cursor() as cur:
                    cur.execute(self.CREATE_SCHEMA_SQL)
            except psycopg2.Error as exc:
                raise StorageError(f"Cannot create schema: {exc}") from exc

    def _fetch_all(
        self, sql: str, params: dict[str, object]
    ) -> list[dict[str, object]]:
        with self._connection() as conn:
            try:
                with conn, conn.cursor(
                    cursor_factory=psycopg2.extras.RealDictCursor
                ) as cur:
                    cur.execute(sql, params)
                    return cast(list[dict[str, object]], cur.fetchall())
            except psycopg2.Error as exc:
                raise StorageError(f"Tile store query failed: {exc}") from exc

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        with self._connection() as conn:
            try:
                with conn.cursor(
                    cursor_factory=psycopg2.extras.RealDictCursor
                ) as cur:
                    yield _PostgresTransaction(cur)
                conn.commit()
            except psycopg2.Error as exc:
                self._rollback(conn)
                raise StorageError(f"Transaction failed: {exc}") from exc
            except BaseException:
                self._rollback(conn)
                raise

    @staticmethod
    def _rollback(conn: psycopg2.extensions.connection) -> None:
        # A closed connection cannot roll back.
        with contextlib.suppress(psycopg2.Error):
            conn.rollback()

    def tiles_containing(self, point: db_models.Point) -> list[db_models.Tile]:
        rows = self._fetch_all(
            self.TILES_CONTAINING_SQL, {"x": point.x, "y": point.y}
        )
        return [self._tile_from_row(row) for row in rows]

    def areas_for_tile(self, tile_id: int) -> list[db_models.Area]:
        rows = self._fetch_all(
            "SELECT id, tile, points, features FROM areas WHERE tile = %(tile)s",
            {"tile": tile_id},
        )
        return [self._geometry_from_row(row, db_models.Area) for row in rows]

    def ways_for_tile(self, tile_id: int) -> list[db_models.Way]:
        rows = self._fetch_all(
            "SELECT id, tile, points, features FROM ways WHERE tile = %(tile)s",
            {"tile": tile_id},
        )
        return [self._geometry_from_row(row, db_models.Way) for row in rows]

    def nodes_for_tile(self, tile_id: int) -> list[db_models.Node]:
        rows = self._fetch_all(
            "SELECT id, tile, x, y, features FROM nodes WHERE tile = %(tile)s",
            {"tile": tile_id},
        )
        return [self._node_from_row(row) for row in rows]

    def close(self) -> None:
        self._pool.closeall()

    @staticmethod
    def _tile_to_row(tile: db_models.TileInsert) -> tuple[float, ...]:
        return (tile.min_x, tile.min_y, tile.max_x, tile.max_y)

    @staticmethod
    def _geometry_to_row(
        row: db_models.WayInsert | db_models.AreaInsert,
    ) -> tuple[object, ...]:
        return (
            row.tile_id,
            psycopg2.Binary(row.points),
            psycopg2.Binary(row.features),
        )

    @staticmethod
    def _node_to_row(node: db_models.NodeInsert) -> tuple[object, ...]:
        return (node.tile_id, node.x, node.y, psycopg2.Binary(node.features))

    @staticmethod
    def _tile_from_row(row: dict[str, object]) -> db_models.Tile:
        """Convert a ``tiles`` row dictionary to a Tile."""
        return db_models.Tile(
            id=int(cast(int, row["id"])),
            min_x=float(cast(float, row["min_x"])),
            min_y=float(cast(float, row["min_y"])),
            max_x=float(cast(float, row["max_x"])),
            max_y=float(cast(float, row["max_y"])),
        )

    @staticmethod
    def _geometry_from_row[T: (db_models.Way, db_models.Area)](
        row: dict[str, object], model: type[T]
    ) -> T:
        """Convert a ``ways`` or ``areas`` row dictionary to ``model``."""
        return model(
            id=int(cast(int, row["id"])),
            tile_id=int(cast(int, row["tile"])),
            points=bytes(cast(bytes, row["points"])),
            features=bytes(cast(bytes, row["features"])),
        )

    @staticmethod
    def _node_from_row(row: dict[str, object]) -> db_models.Node:
        return db_models.Node(
            id=int(cast(int, row["id"])),
            tile_id=int(cast(int, row["tile"])),
            x=float(cast(float, row["x"])),
            y=float(cast(float, row["y"])),
            features=bytes(cast(bytes, row["features"])),
        )


def get_tile_store(settings: config.Settings) -> TileStoreProtocol:
    """Factory function to create the production tile store.

    Args:
        settings: Application settings for the database connection.

    Returns:
        PostgresTileStore instance holding the process-wide pool.
    """
    return PostgresTileStore(settings)
