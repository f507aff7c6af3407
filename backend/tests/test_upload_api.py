"""API endpoint tests for shapefile uploads.

This module provides tests for the /upload endpoint, covering:
    - Successful ingestion of a zipped shapefile,
    - The abort and skip policies for records with invalid geometry,
    - Decode failures and oversized uploads,
    - Removal of the temporary upload file in every case.

Settings and the feature store are always injected using dependency
overrides so no database is needed.

See Also:
    - backend/featurestore/api/upload.py for API implementation.
"""

from __future__ import annotations

import io
import pathlib
from typing import TYPE_CHECKING

import fastapi
import pytest
import shapefile_builders
from fastapi import testclient

from featurestore import main
from featurestore.api import upload as api_upload
from featurestore.core import config, errors
from featurestore.db import database
from featurestore.services import normalize

if TYPE_CHECKING:
    from collections.abc import Iterator

    import httpx


@pytest.fixture
def client(
    test_settings: config.Settings,
    memory_store: database.InMemoryFeatureStore,
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: test_settings
    app.dependency_overrides[api_upload._get_store] = lambda: memory_store
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _upload(
    client: testclient.TestClient,
    data: bytes,
    filename: str = "points.zip",
    **params: str,
) -> httpx.Response:
    return client.post(
        "/upload",
        params=params,
        files={"shapefile": (filename, data, "application/zip")},
    )


def test_upload_success(
    client: testclient.TestClient,
    memory_store: database.InMemoryFeatureStore,
    test_settings: config.Settings,
    valid_points_zip: bytes,
) -> None:
    """Test that a valid archive is ingested and reported."""
    response = _upload(client, valid_points_zip)
    assert response.status_code == 200
    assert response.json() == {
        "message": api_upload.SUCCESS_MESSAGE,
        "inserted": 3,
        "skipped": 0,
        "layers": ["points"],
        "crs_assumed": ["points"],
    }
    assert len(memory_store) == 3
    assert list(test_settings.storage_dir.iterdir()) == []


def test_upload_abort_rejects_whole_batch(
    client: testclient.TestClient,
    memory_store: database.InMemoryFeatureStore,
    mixed_points_zip: bytes,
) -> None:
    """Test that one invalid geometry under abort stores nothing."""
    response = _upload(client, mixed_points_zip, on_invalid_geometry="abort")
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "INVALID_GEOMETRY"
    assert body["index"] == 3
    assert body["layer"] == "points"
    assert len(memory_store) == 0


def test_upload_default_policy_comes_from_settings(
    test_settings: config.Settings,
    memory_store: database.InMemoryFeatureStore,
    mixed_points_zip: bytes,
) -> None:
    settings = test_settings.model_copy(update={"on_invalid_geometry": "skip"})
    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: settings
    app.dependency_overrides[api_upload._get_store] = lambda: memory_store
    try:
        response = _upload(testclient.TestClient(app), mixed_points_zip)
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json()["skipped"] == 1


def test_upload_skip_keeps_valid_records(
    client: testclient.TestClient,
    memory_store: database.InMemoryFeatureStore,
    mixed_points_zip: bytes,
) -> None:
    response = _upload(client, mixed_points_zip, on_invalid_geometry="skip")
    assert response.status_code == 200
    assert response.json()["inserted"] == 3
    assert response.json()["skipped"] == 1
    assert len(memory_store) == 3


def test_upload_not_a_shapefile(
    client: testclient.TestClient,
    memory_store: database.InMemoryFeatureStore,
    test_settings: config.Settings,
) -> None:
    response = _upload(client, b"this is not a zip archive")
    assert response.status_code == 400
    assert response.json()["code"] == "DECODE_FAILED"
    assert len(memory_store) == 0
    assert list(test_settings.storage_dir.iterdir()) == []


def test_upload_missing_dbf(client: testclient.TestClient) -> None:
    parts = shapefile_builders.point_shapefile_parts([(1.0, 1.0, "a", 1)])
    del parts[".dbf"]
    response = _upload(client, shapefile_builders.zip_layers({"points": parts}))
    assert response.status_code == 400
    assert ".dbf" in response.json()["error"]


def test_upload_unsupported_property(
    client: testclient.TestClient,
    monkeypatch: pytest.MonkeyPatch,
    valid_points_zip: bytes,
) -> None:
    """Test that attribute errors fail the upload even under skip."""

    def reject(attributes: object) -> None:
        raise errors.UnsupportedPropertyTypeError("bad value", key="name")

    monkeypatch.setattr(normalize, "normalize_properties", reject)
    response = _upload(client, valid_points_zip, on_invalid_geometry="skip")
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "UNSUPPORTED_PROPERTY_TYPE"
    assert body["key"] == "name"
    assert body["index"] == 0


def test_upload_too_large(
    test_settings: config.Settings,
    memory_store: database.InMemoryFeatureStore,
    valid_points_zip: bytes,
) -> None:
    """Test that uploads over the size limit are refused with 413."""
    settings = test_settings.model_copy(update={"max_upload_size_bytes": 10})
    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: settings
    app.dependency_overrides[api_upload._get_store] = lambda: memory_store
    try:
        response = _upload(testclient.TestClient(app), valid_points_zip)
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 413
    assert len(memory_store) == 0
    assert list(settings.storage_dir.iterdir()) == []


def test_upload_rejects_unknown_policy(
    client: testclient.TestClient,
    valid_points_zip: bytes,
) -> None:
    response = _upload(client, valid_points_zip, on_invalid_geometry="ignore")
    assert response.status_code == 422


def test_upload_requires_file(client: testclient.TestClient) -> None:
    response = client.post("/upload")
    assert response.status_code == 422


def test_upload_store_unavailable(
    test_settings: config.Settings,
    valid_points_zip: bytes,
) -> None:
    class UnavailableStore(database.InMemoryFeatureStore):
        def open_session(self) -> database.StoreSession:
            raise errors.StoreUnavailableError("connection refused")

    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: test_settings
    app.dependency_overrides[api_upload._get_store] = lambda: UnavailableStore()
    try:
        response = _upload(testclient.TestClient(app), valid_points_zip)
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
    assert response.json()["code"] == "STORE_UNAVAILABLE"


def test_save_upload_strips_directories(
    tmp_path: pathlib.Path,
) -> None:
    """Test that client-supplied paths cannot escape the upload directory."""
    upload = fastapi.UploadFile(
        file=io.BytesIO(b"data"), filename="../../etc/points.zip"
    )
    saved = api_upload._save_upload(upload, tmp_path, 1024)
    assert saved.parent == tmp_path
    assert saved.name.endswith("_points.zip")
    assert saved.read_bytes() == b"data"
