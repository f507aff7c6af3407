"""Shapefile ingestion: decode, normalize and load as one batch.

Example:
    Ingest an uploaded archive, skipping records with bad geometry:
        >>> from featurestore.services.ingest_shapefile import ingest_shapefile
        >>> summary = ingest_shapefile(pathlib.Path("parcels.zip"), store, "skip")
        >>> summary.inserted, summary.skipped
        (3, 1)
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from featurestore.services import batch_loader, decode_shapefile, normalize

if TYPE_CHECKING:
    import pathlib

    from featurestore.core import config
    from featurestore.db import database

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class IngestSummary:
    """Counts reported back to the uploader.

    Attributes:
        inserted: Rows committed to the store.
        skipped: Records dropped under the "skip" policy.
        layers: Names of the decoded shapefile layers.
        crs_assumed: Layers without a ``.prj`` that were taken as EPSG:4326.
    """

    inserted: int
    skipped: int
    layers: list[str]
    crs_assumed: list[str]


def ingest_shapefile(
    source: bytes | pathlib.Path,
    store: database.FeatureStoreProtocol,
    on_invalid_geometry: config.InvalidGeometryPolicy,
) -> IngestSummary:
    """Decode a shapefile bundle and load all its features atomically.

    Nothing is written unless decoding and normalization of the whole
    bundle succeed under the given policy.

    Args:
        source: Zip archive bytes or a path to a ``.zip``/``.shp`` bundle.
        store: Feature store to load into.
        on_invalid_geometry: "abort" or "skip" for invalid geometries.

    Returns:
        IngestSummary describing what was stored.

    Raises:
        DecodeError: If the bundle cannot be decoded.
        InvalidGeometryError: Under "abort", for the first invalid record.
        UnsupportedPropertyTypeError: If an attribute is not JSON.
        LoadError: If the store rejects the batch.
        StoreUnavailableError: If no store session can be acquired.
    """
    layers = decode_shapefile.decode_shapefile(source)
    records = [record for layer in layers for record in layer.records]
    normalized = normalize.normalize_records(records, on_invalid_geometry)
    result = batch_loader.load_features(normalized.features, store)

    summary = IngestSummary(
        inserted=result.inserted,
        skipped=len(normalized.skipped),
        layers=[layer.name for layer in layers],
        crs_assumed=[layer.name for layer in layers if layer.crs_assumed],
    )
    logger.info(
        "Ingested %d features (%d skipped) from %d layer(s)",
        summary.inserted,
        summary.skipped,
        len(summary.layers),
    )
    return summary
