"""Feature query API endpoints.

This module provides REST endpoints that return stored features as GeoJSON
FeatureCollections: every feature, or the features within a geodesic
radius (meters) of a WGS84 point.

Example:
    List every feature:
        >>> response = client.get("/points")
        >>> response.json()["type"]
        'FeatureCollection'

    List features within 1 km of a point:
        >>> response = client.get(
        ...     "/points/nearby", params={"lat": 45.81, "lon": 15.98, "radius": 1000}
        ... )
"""

from __future__ import annotations

from typing import Any

import fastapi
from fastapi import concurrency

from featurestore.core import config
from featurestore.db import database
from featurestore.db import models as db_models
from featurestore.services import spatial_query

router = fastapi.APIRouter(prefix="/points", tags=["points"])


def _get_store(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.FeatureStoreProtocol:
    """Resolve the feature store dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        FeatureStoreProtocol implementation selected by the settings.
    """
    return database.get_feature_store(settings)


@router.get("")
async def list_points(
    store: database.FeatureStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> dict[str, Any]:
    """List every stored feature.

    Rows whose geometry cannot be decoded are left out.

    Args:
        store: Feature store (injected via FastAPI Depends).

    Returns:
        GeoJSON FeatureCollection of all features, in insertion order.
    """
    collection = await concurrency.run_in_threadpool(
        spatial_query.list_all, store
    )
    return collection.to_geojson()


@router.get("/nearby")
async def list_nearby_points(
    lat: float,
    lon: float,
    radius: float,
    store: database.FeatureStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> dict[str, Any]:
    """List features within ``radius`` meters of (``lat``, ``lon``).

    Distance is measured on the WGS84 ellipsoid.

    Args:
        lat: Latitude in degrees, within [-90, 90].
        lon: Longitude in degrees, within [-180, 180].
        radius: Search radius in meters, finite and non-negative.
        store: Feature store (injected via FastAPI Depends).

    Returns:
        GeoJSON FeatureCollection of the matching features.

    Raises:
        InvalidQueryError: If a parameter is out of range (400 response).
    """
    point = db_models.Point(lat=lat, lon=lon)
    collection = await concurrency.run_in_threadpool(
        spatial_query.list_near, store, point, radius
    )
    return collection.to_geojson()
