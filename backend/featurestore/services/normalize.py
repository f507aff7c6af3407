"""Validation and canonicalization of decoded shapefile records.

Each decoded (geometry, attributes) pair becomes a Feature whose geometry
is structurally valid GeoJSON in EPSG:4326 and whose properties serialize
to JSON. Geometry checks cover emptiness, coordinate arity and finiteness,
line length, ring closure and ring winding; polygon rings are rewound to
the GeoJSON right-hand rule (exterior counter-clockwise, holes clockwise).
Self-intersections are not checked.

Records with invalid geometry either abort the batch or are skipped,
depending on the policy passed to ``normalize_records``. Attribute values
that cannot be stored as JSON always abort.
"""

from __future__ import annotations

import dataclasses
import datetime
import logging
import math
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from featurestore.core import errors
from featurestore.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from featurestore.core import config
    from featurestore.services import decode_shapefile

logger = logging.getLogger(__name__)

MIN_LINE_POSITIONS = 2
MIN_RING_POSITIONS = 4

Position = list[float]
Ring = list[Position]


@dataclasses.dataclass
class NormalizeResult:
    """Features that passed validation and the errors of skipped records."""

    features: list[db_models.Feature] = dataclasses.field(default_factory=list)
    skipped: list[errors.InvalidGeometryError] = dataclasses.field(
        default_factory=list
    )


def _position(value: Any) -> Position:
    if not isinstance(value, (list, tuple)) or len(value) not in (2, 3):
        raise errors.InvalidGeometryError(
            f"Position must have 2 or 3 numbers, got {value!r}"
        )
    position = []
    for number in value:
        if isinstance(number, bool) or not isinstance(number, (int, float)):
            raise errors.InvalidGeometryError(
                f"Coordinate {number!r} is not a number"
            )
        if not math.isfinite(number):
            raise errors.InvalidGeometryError(
                f"Coordinate {number!r} is not finite"
            )
        position.append(float(number))
    return position


def _positions(value: Any, minimum: int, kind: str) -> list[Position]:
    if not isinstance(value, (list, tuple)):
        raise errors.InvalidGeometryError(f"{kind} coordinates must be an array")
    positions = [_position(item) for item in value]
    if len(positions) < minimum:
        raise errors.InvalidGeometryError(
            f"{kind} needs at least {minimum} positions, got {len(positions)}"
        )
    return positions


def _parts(value: Any, kind: str) -> list[Any]:
    if not isinstance(value, (list, tuple)) or not value:
        raise errors.InvalidGeometryError(f"{kind} has no coordinates")
    return list(value)


def signed_area(ring: Ring) -> float:
    """Shoelace area of a closed ring, positive when counter-clockwise."""
    return sum(
        x1 * y2 - x2 * y1
        for (x1, y1, *_), (x2, y2, *_) in zip(ring, ring[1:], strict=False)
    ) / 2.0


def _ring(value: Any, exterior: bool) -> Ring:
    ring = _positions(value, MIN_RING_POSITIONS, "Polygon ring")
    if ring[0] != ring[-1]:
        raise errors.InvalidGeometryError(
            f"Polygon ring is not closed: {ring[0]} != {ring[-1]}"
        )
    area = signed_area(ring)
    if area == 0.0:
        raise errors.InvalidGeometryError(
            "Polygon ring winding cannot be determined (zero area)"
        )
    counter_clockwise = area > 0
    if counter_clockwise != exterior:
        ring.reverse()
    return ring


def _polygon(value: Any) -> list[Ring]:
    rings = _parts(value, "Polygon")
    return [_ring(ring, exterior=index == 0) for index, ring in enumerate(rings)]


def normalize_geometry(geometry: Any) -> dict[str, Any]:
    """Validate a GeoJSON geometry and return its canonical form.

    Raises:
        InvalidGeometryError: If the geometry is missing, empty, of an
            unknown kind, or structurally invalid.
    """
    if not isinstance(geometry, Mapping):
        raise errors.InvalidGeometryError("Geometry is missing")

    kind = geometry.get("type")
    if kind not in db_models.GEOMETRY_TYPES:
        raise errors.InvalidGeometryError(f"Unknown geometry type {kind!r}")

    if kind == "GeometryCollection":
        members = _parts(geometry.get("geometries"), kind)
        return {
            "type": kind,
            "geometries": [normalize_geometry(member) for member in members],
        }

    coordinates = geometry.get("coordinates")
    canonical: Any
    if kind == "Point":
        canonical = _position(coordinates)
    elif kind == "MultiPoint":
        canonical = _positions(coordinates, 1, kind)
    elif kind == "LineString":
        canonical = _positions(coordinates, MIN_LINE_POSITIONS, kind)
    elif kind == "MultiLineString":
        canonical = [
            _positions(line, MIN_LINE_POSITIONS, "LineString")
            for line in _parts(coordinates, kind)
        ]
    elif kind == "Polygon":
        canonical = _polygon(coordinates)
    else:
        canonical = [_polygon(polygon) for polygon in _parts(coordinates, kind)]
    return {"type": kind, "coordinates": canonical}


def _json_value(value: Any, key: str) -> db_models.JSONValue:
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise errors.UnsupportedPropertyTypeError(
                f"Property '{key}' is not a finite number", key=key
            )
        return value
    # dBASE date fields arrive as datetime.date
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _json_value(v, key) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_value(item, key) for item in value]
    raise errors.UnsupportedPropertyTypeError(
        f"Property '{key}' has unsupported type {type(value).__name__}",
        key=key,
    )


def normalize_properties(attributes: Mapping[Any, Any]) -> db_models.Properties:
    """Coerce attribute keys to strings and check values are JSON.

    Raises:
        UnsupportedPropertyTypeError: If a value cannot be stored as JSON.
    """
    return {
        str(key): _json_value(value, str(key))
        for key, value in attributes.items()
    }


def normalize_record(record: decode_shapefile.DecodedRecord) -> db_models.Feature:
    """Build a Feature from one decoded record.

    Raises:
        InvalidGeometryError: If the geometry is invalid.
        UnsupportedPropertyTypeError: If an attribute is not JSON.
    """
    try:
        geometry = normalize_geometry(record.geometry)
        properties = normalize_properties(record.attributes)
    except (errors.InvalidGeometryError, errors.UnsupportedPropertyTypeError) as exc:
        exc.index = record.index
        exc.layer = record.layer
        raise
    return db_models.Feature(
        geometry=geometry,
        properties=properties,
        source_layer=record.layer,
        source_index=record.index,
    )


def normalize_records(
    records: Iterable[decode_shapefile.DecodedRecord],
    on_invalid_geometry: config.InvalidGeometryPolicy,
) -> NormalizeResult:
    """Normalize a batch of decoded records under an invalid-geometry policy.

    Args:
        records: Decoded records, usually every record of every layer.
        on_invalid_geometry: "abort" re-raises the first invalid geometry;
            "skip" drops the record and keeps going.

    Returns:
        NormalizeResult with the valid features and the skipped errors.

    Raises:
        InvalidGeometryError: Under "abort", for the first invalid record.
        UnsupportedPropertyTypeError: For any attribute that is not JSON.
    """
    result = NormalizeResult()
    for record in records:
        try:
            result.features.append(normalize_record(record))
        except errors.InvalidGeometryError as exc:
            if on_invalid_geometry == "abort":
                raise
            logger.warning(
                "Skipping record %d of layer '%s': %s",
                record.index,
                record.layer,
                exc.message,
            )
            result.skipped.append(exc)
    return result
