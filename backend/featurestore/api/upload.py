"""Shapefile upload API endpoint.

This module provides the REST endpoint that accepts a shapefile bundle as a
multipart upload (field ``shapefile``), stores it temporarily, and runs the
decode, normalize and load pipeline on a worker thread. The bundle is
either a zip archive holding one or more shapefiles or a single ``.shp``.
All features of an upload are committed together or not at all.

Example:
    Upload a zipped shapefile, skipping records with invalid geometry:
        >>> response = client.post(
        ...     "/upload",
        ...     params={"on_invalid_geometry": "skip"},
        ...     files={"shapefile": ("parcels.zip", open("parcels.zip", "rb"))},
        ... )
        >>> response.json()
        {'message': 'Shapefile uploaded and data inserted successfully!',
         'inserted': 3, 'skipped': 1, 'layers': ['parcels'], 'crs_assumed': []}
"""

from __future__ import annotations

import pathlib
import shutil
import tempfile
import uuid
from typing import Literal, TypedDict

import fastapi
from fastapi import concurrency

from featurestore.core import config
from featurestore.db import database
from featurestore.services import ingest_shapefile

router = fastapi.APIRouter(tags=["upload"])

SUCCESS_MESSAGE = "Shapefile uploaded and data inserted successfully!"


class UploadResponse(TypedDict):
    message: str
    inserted: int
    skipped: int
    layers: list[str]
    crs_assumed: list[str]


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


def _save_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> pathlib.Path:
    """Persist an uploaded file to disk with size validation.

    The stored name keeps the original suffix behind a unique prefix so
    concurrent uploads of the same file never collide.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory where the file should be saved.
        max_size: Maximum allowed file size in bytes.

    Returns:
        Path to the saved file.

    Raises:
        HTTPException: If the file exceeds the maximum size limit.
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    original = pathlib.PurePath(file.filename or "upload.zip").name
    target_path = storage_dir / f"{uuid.uuid4().hex}_{original}"
    with tempfile.NamedTemporaryFile(delete=False, dir=storage_dir) as tmp:
        size = 0
        try:
            for chunk in iter(lambda: file.file.read(1024 * 1024), b""):
                size += len(chunk)
                if size > max_size:
                    raise fastapi.HTTPException(
                        status_code=413,
                        detail="Upload too large",
                    )

                tmp.write(chunk)
        except BaseException:
            tmp.close()
            pathlib.Path(tmp.name).unlink(missing_ok=True)
            raise

        tmp.flush()

    shutil.move(tmp.name, target_path)

    return target_path


@router.post("/upload")
async def upload_shapefile(
    shapefile: fastapi.UploadFile,
    on_invalid_geometry: Literal["abort", "skip"] | None = None,
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    store: database.FeatureStoreProtocol = fastapi.Depends(_get_store),  # noqa: B008
) -> UploadResponse:
    """Accept a shapefile bundle and load its features into the store.

    Args:
        shapefile: Uploaded zip archive or ``.shp`` file.
        on_invalid_geometry: "abort" rejects the upload on the first invalid
            geometry, "skip" drops such records. Defaults to the configured
            policy.
        settings: Application settings (injected via FastAPI Depends).
        store: Feature store (injected via FastAPI Depends).

    Returns:
        Success message with inserted/skipped counts, decoded layer names
        and the layers whose CRS was assumed to be EPSG:4326.

    Raises:
        HTTPException: If the upload exceeds the maximum size (413).
        FeatureStoreError: Any decode, validation or load failure, turned
            into a JSON error response by the application.
    """
    saved_path = _save_upload(
        shapefile,
        settings.storage_dir,
        settings.max_upload_size_bytes,
    )
    policy = on_invalid_geometry or settings.on_invalid_geometry
    try:
        summary = await concurrency.run_in_threadpool(
            ingest_shapefile.ingest_shapefile,
            saved_path,
            store,
            policy,
        )
    finally:
        saved_path.unlink(missing_ok=True)

    return UploadResponse(
        message=SUCCESS_MESSAGE,
        inserted=summary.inserted,
        skipped=summary.skipped,
        layers=summary.layers,
        crs_assumed=summary.crs_assumed,
    )
