"""Data models for features, feature collections and stored rows.

This module defines the core data structures exchanged between the
decoder, normalizer, batch loader and query service. A Feature pairs a
GeoJSON geometry in EPSG:4326 with an open mapping of JSON properties; the
store assigns it a surrogate id on insert. Stored rows come back from the
store with their geometry serialized as GeoJSON text and are assembled into
a FeatureCollection per request.

Example:
    Creating a Feature and serializing a collection:
        >>> from featurestore.db.models import Feature, FeatureCollection
        >>> feature = Feature(
        ...     geometry={"type": "Point", "coordinates": [15.98, 45.81]},
        ...     properties={"name": "Zagreb"},
        ... )
        >>> FeatureCollection(features=[feature]).to_geojson()["type"]
        'FeatureCollection'
"""

from __future__ import annotations

import dataclasses
from typing import Any, NamedTuple

type JSONValue = (
    None | bool | int | float | str | list[JSONValue] | dict[str, JSONValue]
)
Geometry = dict[str, Any]
Properties = dict[str, JSONValue]

GEOMETRY_TYPES = frozenset(
    {
        "Point",
        "MultiPoint",
        "LineString",
        "MultiLineString",
        "Polygon",
        "MultiPolygon",
        "GeometryCollection",
    }
)


@dataclasses.dataclass(frozen=True)
class Point:
    """A query location in WGS84 degrees."""

    lat: float
    lon: float


@dataclasses.dataclass
class Feature:
    """A geometry with its attributes, the unit of storage and exchange.

    Attributes:
        geometry: GeoJSON geometry mapping in EPSG:4326 (lon/lat order).
        properties: Open mapping of string keys to JSON values.
        id: Surrogate id assigned by the store, None before insertion.
        source_layer: Shapefile layer the feature was decoded from, if any.
        source_index: Record position within ``source_layer``, if any.
    """

    geometry: Geometry
    properties: Properties = dataclasses.field(default_factory=dict)
    id: int | None = None
    source_layer: str | None = None
    source_index: int | None = None

    def to_geojson(self) -> dict[str, Any]:
        """Return the GeoJSON Feature object for this feature."""
        result: dict[str, Any] = {"type": "Feature"}
        if self.id is not None:
            result["id"] = self.id
        result["geometry"] = self.geometry
        result["properties"] = self.properties
        return result


@dataclasses.dataclass
class FeatureCollection:
    """Ordered features returned by a query.

    Attributes:
        features: Features decoded from the store, in store order.
        skipped_ids: Ids of stored rows omitted because their geometry was
            null or could not be parsed.
    """

    features: list[Feature] = dataclasses.field(default_factory=list)
    skipped_ids: list[int] = dataclasses.field(default_factory=list)

    def __len__(self) -> int:
        return len(self.features)

    def to_geojson(self) -> dict[str, Any]:
        """Return the GeoJSON FeatureCollection envelope."""
        return {
            "type": "FeatureCollection",
            "features": [feature.to_geojson() for feature in self.features],
        }


class StoredRow(NamedTuple):
    """A row read back from the store.

    ``geometry`` is GeoJSON text as produced by the store's serialization
    function, or None when the geometry column is null.
    """

    id: int
    geometry: str | None
    properties: Any
