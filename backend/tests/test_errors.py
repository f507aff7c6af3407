"""Tests for the feature store exception taxonomy."""

from __future__ import annotations

import pytest

from featurestore.core import errors


@pytest.mark.parametrize(
    ("error_class", "code", "status"),
    [
        (errors.DecodeError, "DECODE_FAILED", 400),
        (errors.InvalidGeometryError, "INVALID_GEOMETRY", 422),
        (errors.UnsupportedPropertyTypeError, "UNSUPPORTED_PROPERTY_TYPE", 422),
        (errors.LoadError, "LOAD_FAILED", 500),
        (errors.InvalidQueryError, "INVALID_QUERY", 400),
        (errors.StoreUnavailableError, "STORE_UNAVAILABLE", 503),
    ],
)
def test_error_codes_and_statuses(
    error_class: type[errors.FeatureStoreError],
    code: str,
    status: int,
) -> None:
    """Test that each error kind has a stable code and HTTP status."""
    err = error_class("failed")
    assert isinstance(err, errors.FeatureStoreError)
    assert err.code == code
    assert err.status_code == status
    assert err.to_error_dict() == {"error": "failed", "code": code}


def test_only_store_unavailable_is_retryable() -> None:
    assert errors.StoreUnavailableError.retryable is True
    assert errors.LoadError.retryable is False
    assert errors.DecodeError.retryable is False


def test_record_position_in_payload() -> None:
    """Test that index and layer are reported when known."""
    err = errors.InvalidGeometryError("ring not closed", index=0, layer="parcels")
    assert err.to_error_dict() == {
        "error": "ring not closed",
        "code": "INVALID_GEOMETRY",
        "index": 0,
        "layer": "parcels",
    }


def test_property_error_reports_key() -> None:
    err = errors.UnsupportedPropertyTypeError("bad value", key="blob", index=2)
    payload = err.to_error_dict()
    assert payload["key"] == "blob"
    assert payload["index"] == 2


def test_query_error_reports_field() -> None:
    err = errors.InvalidQueryError("lat out of range", field="lat")
    assert err.to_error_dict() == {
        "error": "lat out of range",
        "code": "INVALID_QUERY",
        "field": "lat",
    }
    assert str(err) == "lat out of range"
