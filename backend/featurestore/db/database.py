"""Feature stores: the session and query interface consumed by the services."""

from __future__ import annotations

import contextlib
import itertools
import json
import logging
import threading
from typing import TYPE_CHECKING, Protocol

import psycopg2
import psycopg2.extensions
import psycopg2.pool
import pyproj
import shapely.errors
import shapely.geometry
import shapely.ops

from featurestore.core import errors
from featurestore.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from shapely.geometry.base import BaseGeometry

    from featurestore.core import config

logger = logging.getLogger(__name__)

_GEOD = pyproj.Geod(ellps="WGS84")


class StoreSession(Protocol):
    """Exclusive write session spanning one batch.

    ``insert`` and ``commit`` raise StoreWriteError when the store rejects
    the write. ``close`` releases the underlying connection and is safe to
    call after either ``commit`` or ``rollback``.
    """

    def insert(self, geometry: str, properties: str) -> int: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None: ...


class FeatureStoreProtocol(Protocol):
    """Protocol interface for storing and querying features.

    Implementations build geometry from GeoJSON text on insert, serialize
    it back to GeoJSON text on read, and evaluate distance on the WGS84
    ellipsoid. ``open_session`` raises StoreUnavailableError when no
    session can be acquired.
    """

    def open_session(self) -> StoreSession: ...

    def fetch_all(self) -> Iterable[db_models.StoredRow]: ...

    def fetch_within(
        self,
        lon: float,
        lat: float,
        radius_meters: float,
    ) -> Iterable[db_models.StoredRow]: ...


def geodesic_distance(
    geometry: BaseGeometry,
    lon: float,
    lat: float,
) -> float:
    """Distance in meters on the WGS84 ellipsoid from a point to a geometry.

    The closest vertex pair is found in lon/lat space and then measured
    geodesically; geometries that cover the point are at distance 0.
    Lines or polygons crossing the antimeridian are treated as spanning the
    whole globe in lon/lat space, so their distance can be greatly
    overestimated.
    """
    point = shapely.geometry.Point(lon, lat)
    if geometry.covers(point):
        return 0.0
    nearest, _ = shapely.ops.nearest_points(geometry, point)
    _, _, distance = _GEOD.inv(nearest.x, nearest.y, lon, lat)
    return float(distance)


_SHAPE_ERRORS = (
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
    IndexError,
    shapely.errors.ShapelyError,
)


class _InMemorySession:
    def __init__(self, store: InMemoryFeatureStore) -> None:
        self._store = store
        self._pending: list[tuple[int, str, str]] = []

    def insert(self, geometry: str, properties: str) -> int:
        try:
            shape = shapely.geometry.shape(json.loads(geometry))
            json.loads(properties)
        except _SHAPE_ERRORS as exc:
            raise errors.StoreWriteError(f"Rejected geometry: {exc}") from exc
        if shape.is_empty:
            raise errors.StoreWriteError("Rejected geometry: empty")
        row_id = self._store._next_id()
        self._pending.append((row_id, geometry, properties))
        return row_id

    def commit(self) -> None:
        self._store._publish(self._pending)
        self._pending = []

    def rollback(self) -> None:
        self._pending = []

    def close(self) -> None:
        self._pending = []


class InMemoryFeatureStore(FeatureStoreProtocol):
    """Simple in-memory store for tests and local development.

    Inserts are staged per session and published under a lock on commit,
    so concurrent readers never observe a partial batch. Data is lost when
    the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._rows: dict[int, tuple[str | None, str]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def open_session(self) -> StoreSession:
        return _InMemorySession(self)

    def _next_id(self) -> int:
        # Ids consumed by rolled back sessions are not reused, like a
        # database sequence.
        with self._lock:
            return next(self._ids)

    def _publish(self, pending: list[tuple[int, str, str]]) -> None:
        with self._lock:
            for row_id, geometry, properties in pending:
                self._rows[row_id] = (geometry, properties)

    def _snapshot(self) -> list[db_models.StoredRow]:
        with self._lock:
            items = list(self._rows.items())
        return [
            db_models.StoredRow(row_id, geometry, json.loads(properties))
            for row_id, (geometry, properties) in items
        ]

    def fetch_all(self) -> Iterable[db_models.StoredRow]:
        """Get all stored rows in insertion order."""
        return self._snapshot()

    def fetch_within(
        self,
        lon: float,
        lat: float,
        radius_meters: float,
    ) -> Iterable[db_models.StoredRow]:
        """Get rows whose geometry lies within a geodesic radius of a point.

        Rows with a null or unreadable geometry never match, as with
        ST_DWithin on a null column.
        """
        matches = []
        for row in self._snapshot():
            if row.geometry is None:
                continue
            try:
                shape = shapely.geometry.shape(json.loads(row.geometry))
            except _SHAPE_ERRORS:
                continue
            if geodesic_distance(shape, lon, lat) <= radius_meters:
                matches.append(row)
        return matches

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class _PostgresSession:
    def __init__(
        self,
        pool: psycopg2.pool.ThreadedConnectionPool,
        conn: psycopg2.extensions.connection,
        insert_sql: str,
    ) -> None:
        self._pool = pool
        self._conn = conn
        self._insert_sql = insert_sql
        self._closed = False

    def insert(self, geometry: str, properties: str) -> int:
        try:
            with self._conn.cursor() as cur:
                cur.execute(self._insert_sql, (geometry, properties))
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise errors.StoreWriteError(str(exc).strip()) from exc
        return int(row[0])

    def commit(self) -> None:
        try:
            self._conn.commit()
        except psycopg2.Error as exc:
            raise errors.StoreWriteError(str(exc).strip()) from exc

    def rollback(self) -> None:
        if not self._conn.closed:
            self._conn.rollback()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pool.putconn(self._conn, close=bool(self._conn.closed))


class PostgresFeatureStore(FeatureStoreProtocol):
    """PostgreSQL/PostGIS-backed feature store.

    Connections come from a thread-safe pool. The PostGIS extension, the
    feature table and its GiST index are created on first use. Geometry is
    built with ST_GeomFromGeoJSON, serialized with ST_AsGeoJSON and
    filtered with ST_DWithin on the geography type (spheroid distance).
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
      id SERIAL PRIMARY KEY,
      geom geometry(Geometry, 4326),
      properties JSONB NOT NULL DEFAULT '{{}}'::jsonb
    );
    CREATE INDEX IF NOT EXISTS {table}_geom_idx ON {table} USING GIST (geom);
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize store with database settings.

        Args:
            settings: Application settings containing the connection URL,
                pool sizes, statement timeout and feature table name.
        """
        self.settings = settings
        self.table = settings.feature_table
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None
        self._schema_ready = False
        self._lock = threading.Lock()

    @property
    def insert_sql(self) -> str:
        return (
            f"INSERT INTO {self.table} (geom, properties) "
            "VALUES (ST_SetSRID(ST_GeomFromGeoJSON(%s), 4326), %s::jsonb) "
            "RETURNING id"
        )

    @property
    def select_all_sql(self) -> str:
        return (
            f"SELECT id, ST_AsGeoJSON(geom, 15) AS geom, properties "
            f"FROM {self.table} ORDER BY id"
        )

    @property
    def select_within_sql(self) -> str:
        return (
            f"SELECT id, ST_AsGeoJSON(geom, 15) AS geom, properties "
            f"FROM {self.table} "
            "WHERE ST_DWithin(geom::geography, "
            "ST_SetSRID(ST_MakePoint(%s, %s), 4326)::geography, %s) "
            "ORDER BY id"
        )

    def _connect_kwargs(self) -> dict[str, str]:
        if self.settings.statement_timeout_ms is None:
            return {}
        return {
            "options": f"-c statement_timeout={self.settings.statement_timeout_ms}"
        }

    def _get_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        with self._lock:
            if self._pool is None:
                try:
                    self._pool = psycopg2.pool.ThreadedConnectionPool(
                        self.settings.pool_min_size,
                        self.settings.pool_max_size,
                        self.settings.database_url,
                        **self._connect_kwargs(),
                    )
                except psycopg2.Error as exc:
                    raise errors.StoreUnavailableError(
                        f"Cannot connect to feature store: {exc}".strip()
                    ) from exc
            return self._pool

    def _acquire(self) -> psycopg2.extensions.connection:
        pool = self._get_pool()
        try:
            conn = pool.getconn()
        except psycopg2.pool.PoolError as exc:
            raise errors.StoreUnavailableError(
                f"No feature store connection available: {exc}"
            ) from exc
        except psycopg2.Error as exc:
            raise errors.StoreUnavailableError(
                f"Cannot connect to feature store: {exc}".strip()
            ) from exc
        try:
            self._ensure_schema(conn)
        except psycopg2.Error as exc:
            pool.putconn(conn, close=True)
            raise errors.StoreUnavailableError(
                f"Cannot prepare feature table: {exc}".strip()
            ) from exc
        return conn

    def _ensure_schema(self, conn: psycopg2.extensions.connection) -> None:
        """Ensure PostGIS extension, feature table and index exist."""
        if self._schema_ready:
            return
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLE_SQL.format(table=self.table))
        conn.commit()
        self._schema_ready = True

    @contextlib.contextmanager
    def _connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow a pooled connection for a read, returning it afterwards."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            if not conn.closed:
                conn.rollback()
            self._get_pool().putconn(conn, close=bool(conn.closed))

    def open_session(self) -> StoreSession:
        conn = self._acquire()
        return _PostgresSession(self._get_pool(), conn, self.insert_sql)

    def _query(
        self,
        sql: str,
        params: tuple[float, ...] | None = None,
    ) -> list[db_models.StoredRow]:
        try:
            with self._connection() as conn, conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except psycopg2.OperationalError as exc:
            raise errors.StoreUnavailableError(
                f"Feature store query failed: {exc}".strip()
            ) from exc
        return [self._from_row(row) for row in rows]

    def fetch_all(self) -> Iterable[db_models.StoredRow]:
        return self._query(self.select_all_sql)

    def fetch_within(
        self,
        lon: float,
        lat: float,
        radius_meters: float,
    ) -> Iterable[db_models.StoredRow]:
        return self._query(self.select_within_sql, (lon, lat, radius_meters))

    @staticmethod
    def _from_row(row: tuple[object, ...]) -> db_models.StoredRow:
        """Convert a (id, geojson, properties) result row to a StoredRow."""
        row_id, geometry, properties = row
        return db_models.StoredRow(
            id=int(row_id),  # type: ignore[call-overload]
            geometry=None if geometry is None else str(geometry),
            properties=properties,
        )

    def close(self) -> None:
        """Close every pooled connection."""
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None


_stores: dict[tuple[str, str, str], FeatureStoreProtocol] = {}
_stores_lock = threading.Lock()


def get_feature_store(settings: config.Settings) -> FeatureStoreProtocol:
    """Factory function returning the process-wide feature store.

    One store (and so one connection pool) is kept per backend, database
    URL and table.

    Args:
        settings: Application settings selecting the backend.

    Returns:
        PostgresFeatureStore for "postgres", InMemoryFeatureStore for
        "memory".
    """
    key = (settings.store_backend, settings.database_url, settings.feature_table)
    with _stores_lock:
        store = _stores.get(key)
        if store is None:
            if settings.store_backend == "memory":
                store = InMemoryFeatureStore()
            else:
                store = PostgresFeatureStore(settings)
            _stores[key] = store
            logger.info(
                "Opened %s feature store for table %s",
                settings.store_backend,
                settings.feature_table,
            )
        return store
