"""Shared fixtures for feature store tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import shapefile_builders

from featurestore.core import config
from featurestore.db import database

if TYPE_CHECKING:
    import pathlib


@pytest.fixture
def valid_points_zip() -> bytes:
    """Archive with three valid points."""
    return shapefile_builders.zip_layers(
        {"points": shapefile_builders.point_shapefile_parts(
            shapefile_builders.VALID_POINTS
        )}
    )


@pytest.fixture
def mixed_points_zip() -> bytes:
    """Archive with three valid points and one non-finite coordinate."""
    return shapefile_builders.zip_layers(
        {"points": shapefile_builders.point_shapefile_parts(
            shapefile_builders.MIXED_POINTS
        )}
    )


@pytest.fixture
def memory_store() -> database.InMemoryFeatureStore:
    return database.InMemoryFeatureStore()


@pytest.fixture
def test_settings(tmp_path: pathlib.Path) -> config.Settings:
    settings = config.Settings(
        storage_dir=tmp_path / "uploads",
        store_backend="memory",
        allow_origins=["*"],
    )
    settings.ensure_directories()
    return settings
