"""Shapefile bundle decoding using pyshp and pyproj.

This module turns an uploaded shapefile bundle into decoded layers of
(geometry, attribute map) pairs. A bundle is a zip archive (raw bytes or a
``.zip`` path) holding one or more shapefiles, or a ``.shp`` path whose
``.dbf``/``.shx``/``.prj``/``.cpg`` sidecars sit next to it.

Geometries are produced as GeoJSON mappings through pyshp's geo interface
and reprojected to EPSG:4326 when the ``.prj`` sidecar declares another
coordinate reference system. Without a ``.prj`` the layer is assumed to be
in EPSG:4326 already; the assumption is logged and flagged on the layer.

Example:
    Decode an uploaded archive:
        >>> from featurestore.services.decode_shapefile import decode_shapefile
        >>> layers = decode_shapefile(pathlib.Path("parcels.zip"))
        >>> for layer in layers:
        ...     print(layer.name, layer.crs, len(layer.records))
"""

from __future__ import annotations

import codecs
import dataclasses
import io
import logging
import pathlib
import struct
import zipfile
from typing import TYPE_CHECKING, Any, NamedTuple

import pyproj
import pyproj.exceptions
import shapefile

from featurestore.core import errors

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

TARGET_CRS = "EPSG:4326"
_WGS84 = pyproj.CRS.from_epsg(4326)

SIDECARS = (".shx", ".dbf", ".prj", ".cpg")

SUPPORTED_SHAPE_TYPES = frozenset(
    {
        shapefile.NULL,
        shapefile.POINT,
        shapefile.POINTZ,
        shapefile.POINTM,
        shapefile.MULTIPOINT,
        shapefile.MULTIPOINTZ,
        shapefile.MULTIPOINTM,
        shapefile.POLYLINE,
        shapefile.POLYLINEZ,
        shapefile.POLYLINEM,
        shapefile.POLYGON,
        shapefile.POLYGONZ,
        shapefile.POLYGONM,
    }
)

_READ_ERRORS = (
    shapefile.ShapefileException,
    struct.error,
    ValueError,
    EOFError,
    IndexError,
    OSError,
)


class DecodedRecord(NamedTuple):
    """One shape with its raw dBASE attributes.

    ``geometry`` is a GeoJSON mapping in EPSG:4326, or None for a null
    shape. ``index`` is the record position within its layer.
    """

    layer: str
    index: int
    geometry: dict[str, Any] | None
    attributes: dict[Any, Any]


@dataclasses.dataclass
class ShapefileBundle:
    """Raw component bytes of one shapefile."""

    name: str
    shp: bytes
    dbf: bytes
    shx: bytes | None = None
    prj: str | None = None
    cpg: str | None = None


@dataclasses.dataclass
class DecodedLayer:
    """Records decoded from one shapefile.

    Attributes:
        name: Layer name (shapefile path inside the archive, minus suffix).
        crs: Source CRS label, e.g. "EPSG:32633", or EPSG:4326 when assumed.
        crs_assumed: True when the bundle had no ``.prj`` and EPSG:4326 was
            assumed.
        records: Decoded records, already reprojected to EPSG:4326.
    """

    name: str
    crs: str
    crs_assumed: bool
    records: list[DecodedRecord] = dataclasses.field(default_factory=list)


def _bundle_from_parts(name: str, parts: dict[str, bytes]) -> ShapefileBundle:
    if ".shp" not in parts:
        raise errors.DecodeError(f"Shapefile '{name}' has no .shp component")
    if ".dbf" not in parts:
        raise errors.DecodeError(f"Shapefile '{name}' has no .dbf component")
    return ShapefileBundle(
        name=name,
        shp=parts[".shp"],
        dbf=parts[".dbf"],
        shx=parts.get(".shx"),
        prj=_sidecar_text(parts.get(".prj")),
        cpg=_sidecar_text(parts.get(".cpg")),
    )


def _sidecar_text(raw: bytes | None) -> str | None:
    if raw is None:
        return None
    return raw.decode("utf-8", errors="replace").strip() or None


def read_zip_bundles(data: bytes) -> list[ShapefileBundle]:
    """Split a zip archive into shapefile bundles, sorted by layer name.

    Raises:
        DecodeError: If the payload is not a zip archive, contains no
            ``.shp`` file, or a shapefile lacks its ``.dbf``.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise errors.DecodeError(f"Not a zip archive: {exc}") from exc

    grouped: dict[str, dict[str, bytes]] = {}
    with archive:
        for info in archive.infolist():
            member = pathlib.PurePosixPath(info.filename)
            if info.is_dir() or member.parts[0] == "__MACOSX":
                continue
            if member.name.startswith("._"):
                continue
            suffix = member.suffix.lower()
            if suffix != ".shp" and suffix not in SIDECARS:
                continue
            key = str(member.with_suffix(""))
            try:
                grouped.setdefault(key, {})[suffix] = archive.read(info)
            except (zipfile.BadZipFile, OSError, EOFError) as exc:
                raise errors.DecodeError(
                    f"Cannot read '{info.filename}' from archive: {exc}"
                ) from exc

    names = sorted(key for key, parts in grouped.items() if ".shp" in parts)
    if not names:
        raise errors.DecodeError("Archive contains no .shp file")
    return [_bundle_from_parts(name, grouped[name]) for name in names]


def read_path_bundles(path: pathlib.Path) -> list[ShapefileBundle]:
    """Read bundles from a ``.zip`` archive or a ``.shp`` file with sidecars.

    Raises:
        DecodeError: If the path is missing, of another type, or lacks
            required components.
    """
    if not path.is_file():
        raise errors.DecodeError(f"Shapefile bundle not found: {path.name}")

    suffix = path.suffix.lower()
    if suffix == ".zip":
        return read_zip_bundles(path.read_bytes())
    if suffix != ".shp":
        data = path.read_bytes()
        if zipfile.is_zipfile(io.BytesIO(data)):
            return read_zip_bundles(data)
        raise errors.DecodeError(
            f"Unsupported upload '{path.name}': expected .zip or .shp"
        )

    parts: dict[str, bytes] = {}
    for sibling in path.parent.iterdir():
        sibling_suffix = sibling.suffix.lower()
        if sibling.stem != path.stem or not sibling.is_file():
            continue
        if sibling_suffix == ".shp" or sibling_suffix in SIDECARS:
            parts[sibling_suffix] = sibling.read_bytes()
    return [_bundle_from_parts(path.stem, parts)]


def _resolve_encoding(cpg: str | None) -> str:
    """Map a ``.cpg`` code page declaration to a Python codec name."""
    if not cpg:
        return "utf-8"
    candidate = cpg.split()[-1]
    if candidate.isdigit():
        candidate = f"cp{candidate}"
    try:
        return codecs.lookup(candidate).name
    except LookupError:
        logger.warning("Unknown code page '%s' in .cpg, using utf-8", cpg)
        return "utf-8"


def _resolve_crs(bundle: ShapefileBundle) -> tuple[pyproj.CRS | None, str]:
    """Return the source CRS (None when no transform is needed) and its label.

    Raises:
        DecodeError: If the ``.prj`` cannot be parsed.
    """
    if bundle.prj is None:
        return None, TARGET_CRS
    try:
        crs = pyproj.CRS.from_wkt(bundle.prj)
    except pyproj.exceptions.CRSError as exc:
        raise errors.DecodeError(
            f"Unreadable projection in '{bundle.name}.prj': {exc}"
        ) from exc
    epsg = crs.to_epsg()
    label = f"EPSG:{epsg}" if epsg is not None else crs.name
    if crs.equals(_WGS84, ignore_axis_order=True) or epsg == 4326:
        return None, TARGET_CRS
    return crs, label


def _transform_coordinates(
    coordinates: Any,
    transformer: pyproj.Transformer | None,
) -> Any:
    """Copy nested coordinate arrays into lists, reprojecting when asked.

    Any Z value is kept as-is.
    """
    if coordinates and isinstance(coordinates[0], (int, float)):
        if transformer is None:
            return list(coordinates)
        x, y = transformer.transform(coordinates[0], coordinates[1])
        return [x, y, *coordinates[2:]]
    return [_transform_coordinates(part, transformer) for part in coordinates]


def reproject_geometry(
    geometry: dict[str, Any],
    transformer: pyproj.Transformer | None,
) -> dict[str, Any]:
    """Return a list-based copy of a GeoJSON geometry.

    Coordinates are transformed when a transformer is given.
    """
    if geometry["type"] == "GeometryCollection":
        return {
            "type": "GeometryCollection",
            "geometries": [
                reproject_geometry(part, transformer)
                for part in geometry["geometries"]
            ],
        }
    return {
        "type": geometry["type"],
        "coordinates": _transform_coordinates(
            geometry["coordinates"], transformer
        ),
    }


def _iter_records(
    bundle: ShapefileBundle,
    transformer: pyproj.Transformer | None,
) -> Iterator[DecodedRecord]:
    sources: dict[str, io.BytesIO] = {
        "shp": io.BytesIO(bundle.shp),
        "dbf": io.BytesIO(bundle.dbf),
    }
    if bundle.shx is not None:
        sources["shx"] = io.BytesIO(bundle.shx)

    with shapefile.Reader(
        encoding=_resolve_encoding(bundle.cpg), **sources
    ) as reader:
        if reader.shapeType not in SUPPORTED_SHAPE_TYPES:
            raise errors.DecodeError(
                f"Unsupported geometry type "
                f"'{shapefile.SHAPETYPE_LOOKUP.get(reader.shapeType)}' "
                f"in '{bundle.name}'",
                layer=bundle.name,
            )
        for index, shape_record in enumerate(reader.iterShapeRecords()):
            shape = shape_record.shape
            if shape.shapeType not in SUPPORTED_SHAPE_TYPES:
                raise errors.DecodeError(
                    f"Unsupported geometry type "
                    f"'{shapefile.SHAPETYPE_LOOKUP.get(shape.shapeType)}'",
                    index=index,
                    layer=bundle.name,
                )
            geometry: dict[str, Any] | None = None
            if shape.shapeType != shapefile.NULL and shape.points:
                geometry = reproject_geometry(
                    shape.__geo_interface__, transformer
                )
            yield DecodedRecord(
                layer=bundle.name,
                index=index,
                geometry=geometry,
                attributes=shape_record.record.as_dict(),
            )


def decode_bundle(bundle: ShapefileBundle) -> DecodedLayer:
    """Decode one shapefile into a layer of EPSG:4326 records.

    Raises:
        DecodeError: If the shapefile is truncated or corrupt, its
            projection cannot be parsed, or it holds MultiPatch shapes.
    """
    source_crs, label = _resolve_crs(bundle)
    transformer = None
    if source_crs is not None:
        transformer = pyproj.Transformer.from_crs(
            source_crs, TARGET_CRS, always_xy=True
        )
    elif bundle.prj is None:
        logger.warning(
            "No .prj for layer '%s', assuming coordinates are %s",
            bundle.name,
            TARGET_CRS,
        )

    try:
        records = list(_iter_records(bundle, transformer))
    except _READ_ERRORS as exc:
        raise errors.DecodeError(
            f"Cannot read shapefile '{bundle.name}': {exc}",
            layer=bundle.name,
        ) from exc

    logger.info(
        "Decoded %d records from layer '%s' (%s)",
        len(records),
        bundle.name,
        label,
    )
    return DecodedLayer(
        name=bundle.name,
        crs=label,
        crs_assumed=bundle.prj is None,
        records=records,
    )


def decode_shapefile(source: bytes | pathlib.Path) -> list[DecodedLayer]:
    """Decode every shapefile in a bundle.

    Args:
        source: Zip archive bytes, or a path to a ``.zip`` archive or a
            ``.shp`` file with its sidecars next to it.

    Returns:
        Decoded layers in layer-name order.

    Raises:
        DecodeError: If the bundle is missing required components, is
            truncated, or contains an unsupported geometry type.

    Example:
        Decode archive bytes received from an upload:
            >>> layers = decode_shapefile(upload_bytes)
            >>> records = [r for layer in layers for r in layer.records]
    """
    if isinstance(source, bytes):
        bundles = read_zip_bundles(source)
    else:
        bundles = read_path_bundles(source)
    return [decode_bundle(bundle) for bundle in bundles]
