"""Read-side queries returning stored features as GeoJSON collections.

``list_all`` returns every stored feature; ``list_near`` returns features
within a geodesic radius of a WGS84 point. Query parameters are validated
before the store is touched. Rows whose geometry is null or cannot be
parsed are left out of the collection, logged and listed in
``FeatureCollection.skipped_ids``; they never fail the request.

Example:
    Query features around Zagreb:
        >>> from featurestore.db import models as db_models
        >>> from featurestore.services import spatial_query
        >>> collection = spatial_query.list_near(
        ...     store, db_models.Point(lat=45.81, lon=15.98), 1000
        ... )
        >>> collection.to_geojson()["type"]
        'FeatureCollection'
"""

from __future__ import annotations

import json
import logging
import math
from typing import TYPE_CHECKING

from featurestore.core import errors
from featurestore.db import models as db_models
from featurestore.services import normalize

if TYPE_CHECKING:
    from collections.abc import Iterable

    from featurestore.db import database

logger = logging.getLogger(__name__)

MIN_LATITUDE, MAX_LATITUDE = -90.0, 90.0
MIN_LONGITUDE, MAX_LONGITUDE = -180.0, 180.0


def validate_query(point: db_models.Point, radius_meters: float) -> None:
    """Check a proximity query is in range.

    Raises:
        InvalidQueryError: If lat/lon are outside WGS84 bounds or the radius
            is negative or not finite.
    """
    if not (math.isfinite(point.lat) and MIN_LATITUDE <= point.lat <= MAX_LATITUDE):
        raise errors.InvalidQueryError(
            f"lat must be within [{MIN_LATITUDE}, {MAX_LATITUDE}], got {point.lat}",
            field="lat",
        )
    if not (math.isfinite(point.lon) and MIN_LONGITUDE <= point.lon <= MAX_LONGITUDE):
        raise errors.InvalidQueryError(
            f"lon must be within [{MIN_LONGITUDE}, {MAX_LONGITUDE}], got {point.lon}",
            field="lon",
        )
    if not math.isfinite(radius_meters) or radius_meters < 0:
        raise errors.InvalidQueryError(
            f"radius must be a finite, non-negative number, got {radius_meters}",
            field="radius",
        )


def _decode_properties(value: object) -> db_models.Properties:
    if value is None:
        return {}
    if isinstance(value, (str, bytes)):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise ValueError(f"properties is a {type(value).__name__}, not an object")
    return value


def row_to_feature(row: db_models.StoredRow) -> db_models.Feature:
    """Parse a stored row back into a Feature.

    Raises:
        InvalidGeometryError: If the geometry is null or not valid GeoJSON.
        ValueError: If the properties column is not a JSON object.
    """
    if row.geometry is None:
        raise errors.InvalidGeometryError("Geometry is null")
    try:
        geometry = json.loads(row.geometry)
    except ValueError as exc:
        raise errors.InvalidGeometryError(f"Geometry is not JSON: {exc}") from exc
    return db_models.Feature(
        geometry=normalize.normalize_geometry(geometry),
        properties=_decode_properties(row.properties),
        id=row.id,
    )


def to_collection(rows: Iterable[db_models.StoredRow]) -> db_models.FeatureCollection:
    """Assemble stored rows into a collection, omitting undecodable rows."""
    collection = db_models.FeatureCollection()
    for row in rows:
        try:
            collection.features.append(row_to_feature(row))
        except (errors.InvalidGeometryError, ValueError) as exc:
            logger.warning("Skipping stored row %s: %s", row.id, exc)
            collection.skipped_ids.append(row.id)
    return collection


def list_all(store: database.FeatureStoreProtocol) -> db_models.FeatureCollection:
    """Return every stored feature. Results are not paginated."""
    return to_collection(store.fetch_all())


def list_near(
    store: database.FeatureStoreProtocol,
    point: db_models.Point,
    radius_meters: float,
) -> db_models.FeatureCollection:
    """Return features within ``radius_meters`` of ``point``.

    Distance is geodesic on the WGS84 ellipsoid. A radius of 0 matches only
    geometries touching the point.

    Raises:
        InvalidQueryError: If the parameters are out of range. The store is
            not queried in that case.
    """
    validate_query(point, radius_meters)
    return to_collection(store.fetch_within(point.lon, point.lat, radius_meters))
