"""Exception taxonomy for shapefile ingestion and spatial queries.

Every error raised by the decode, normalize, load and query services
inherits from ``FeatureStoreError`` and carries a stable machine-readable
``code``, the HTTP ``status_code`` the boundary layer answers with, and an
optional record ``index``/``layer`` for record-scoped failures.

Taxonomy:
    - ``DecodeError``: malformed or unsupported shapefile bundle.
    - ``InvalidGeometryError``: structurally invalid geometry.
    - ``UnsupportedPropertyTypeError``: attribute value that is not JSON.
    - ``LoadError``: store-side insert or transaction failure.
    - ``InvalidQueryError``: out-of-range query parameters.
    - ``StoreUnavailableError``: connection/session acquisition failure.

``StoreWriteError`` is raised by store sessions when the store rejects a
write. The batch loader wraps it in ``LoadError``.

Example:
    Translate an error into a response body:
        >>> err = InvalidQueryError("lat out of range", field="lat")
        >>> err.to_error_dict()
        {'error': 'lat out of range', 'code': 'INVALID_QUERY', 'field': 'lat'}
"""

from __future__ import annotations


class FeatureStoreError(Exception):
    """Base exception for all feature store errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code.
        status_code: HTTP status the boundary layer responds with.
        retryable: Whether a caller may retry the same request later.
        index: Position of the offending record within its batch, if any.
        layer: Shapefile layer of the offending record, if known.
    """

    default_code: str = "FEATURE_STORE_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        index: int | None = None,
        layer: str | None = None,
    ) -> None:
        self.message = message
        self.code = self.default_code
        self.index = index
        self.layer = layer
        super().__init__(message)

    def to_error_dict(self) -> dict[str, object]:
        """Return the JSON error payload with stable keys."""
        payload: dict[str, object] = {"error": self.message, "code": self.code}
        if self.index is not None:
            payload["index"] = self.index
        if self.layer is not None:
            payload["layer"] = self.layer
        return payload


class DecodeError(FeatureStoreError):
    """Raised when a shapefile bundle is missing, truncated or unsupported."""

    default_code = "DECODE_FAILED"
    status_code = 400


class InvalidGeometryError(FeatureStoreError):
    """Raised when a decoded geometry is not structurally valid."""

    default_code = "INVALID_GEOMETRY"
    status_code = 422


class UnsupportedPropertyTypeError(FeatureStoreError):
    """Raised when an attribute value cannot be stored as JSON."""

    default_code = "UNSUPPORTED_PROPERTY_TYPE"
    status_code = 422

    def __init__(
        self,
        message: str = "",
        *,
        key: str | None = None,
        index: int | None = None,
        layer: str | None = None,
    ) -> None:
        self.key = key
        super().__init__(message, index=index, layer=layer)

    def to_error_dict(self) -> dict[str, object]:
        payload = super().to_error_dict()
        if self.key is not None:
            payload["key"] = self.key
        return payload


class LoadError(FeatureStoreError):
    """Raised when a batch could not be made durable. The batch is rolled back."""

    default_code = "LOAD_FAILED"
    status_code = 500


class InvalidQueryError(FeatureStoreError):
    """Raised when query parameters are out of range."""

    default_code = "INVALID_QUERY"
    status_code = 400

    def __init__(self, message: str = "", *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)

    def to_error_dict(self) -> dict[str, object]:
        payload = super().to_error_dict()
        if self.field is not None:
            payload["field"] = self.field
        return payload


class StoreUnavailableError(FeatureStoreError):
    """Raised when no store connection or session can be acquired."""

    default_code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True


class StoreWriteError(FeatureStoreError):
    """Raised by a store session when the store rejects an insert or commit."""

    default_code = "STORE_WRITE_FAILED"
    status_code = 500
