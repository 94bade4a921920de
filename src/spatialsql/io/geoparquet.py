"""
GeoParquet reader and writer.

Geometry columns are stored as WKB binary columns described by the ``geo``
key of the Parquet file metadata. A column's CRS is written as PROJJSON, or
as an explicit ``null`` when the column declares none, and read back to the
same identifier.

Reading rules for the column CRS:
- ``"crs": null`` -> no declared CRS
- ``crs`` key absent -> OGC:CRS84, the GeoParquet default
- PROJJSON object -> its authority identifier, canonicalized by the registry

Files without ``geo`` metadata carry no geometry columns unless the caller
names them with ``geometry_columns``; such columns have no declared CRS.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq
import shapely
from pyproj import CRS
from pyproj.exceptions import CRSError

from spatialsql.core.crs.registry import CrsRegistry, default_registry
from spatialsql.core.errors import GeoParquetError, UnknownCrs
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.core.schema import GeometryColumn, ScalarType, Table
from spatialsql.models.crs import CrsId
from spatialsql.utils.logging import log_performance

logger = logging.getLogger(__name__)

GEO_METADATA_KEY = b"geo"
GEOPARQUET_VERSION = "1.1.0"
DEFAULT_CRS = CrsId("ogc", "crs84")

_ARROW_TYPES = {
    ScalarType.BOOLEAN: pa.bool_(),
    ScalarType.INTEGER: pa.int64(),
    ScalarType.FLOAT: pa.float64(),
    ScalarType.STRING: pa.string(),
    ScalarType.BINARY: pa.binary(),
    ScalarType.NULL: pa.null(),
}

PathLike = Union[str, Path]


def _geometry_types(geometries: np.ndarray) -> List[str]:
    present = geometries[~shapely.is_missing(geometries)]
    types = set()
    for geometry in present:
        suffix = " Z" if shapely.has_z(geometry) else ""
        types.add(f"{geometry.geom_type}{suffix}")
    return sorted(types)


def _bbox(geometries: np.ndarray) -> Optional[List[float]]:
    present = geometries[~shapely.is_missing(geometries)]
    present = present[~shapely.is_empty(present)]
    if len(present) == 0:
        return None
    return [float(v) for v in shapely.total_bounds(present)]


def _column_metadata(column: GeometryColumn, registry: CrsRegistry) -> Dict[str, Any]:
    geometries = np.array(
        [v.decode() if v is not None else None for v in column.values], dtype=object
    )
    metadata: Dict[str, Any] = {
        "encoding": "WKB",
        "geometry_types": _geometry_types(geometries),
    }
    bbox = _bbox(geometries)
    if bbox is not None:
        metadata["bbox"] = bbox
    if column.crs is None:
        metadata["crs"] = None
    else:
        metadata["crs"] = registry.resolve(column.crs).proj.to_json_dict()
    return metadata


@log_performance(log_level=logging.DEBUG)
def write_geoparquet(
    table: Table,
    path: PathLike,
    primary_column: Optional[str] = None,
    registry: Optional[CrsRegistry] = None,
    compression: str = "snappy",
) -> None:
    """
    Write a table as GeoParquet.

    Args:
        table: Table to write
        path: Destination file
        primary_column: Primary geometry column, the first geometry column by default
        registry: Registry used to produce PROJJSON for column CRS
        compression: Parquet compression codec

    Raises:
        GeoParquetError: If the table has no geometry column or ``primary_column``
            is not one
        MalformedGeometry: If a geometry payload cannot be decoded
    """
    registry = registry or default_registry()
    geometry_names = [f.name for f in table.schema.fields if f.is_geometry]
    if not geometry_names:
        raise GeoParquetError("GeoParquet needs at least one geometry column", path=str(path))
    primary_column = primary_column or geometry_names[0]
    if primary_column not in geometry_names:
        raise GeoParquetError(
            f"Primary column '{primary_column}' is not a geometry column",
            path=str(path),
            column=primary_column,
        )

    arrays = []
    columns_metadata: Dict[str, Any] = {}
    for f in table.schema.fields:
        data = table.column(f.name)
        if f.is_geometry:
            arrays.append(
                pa.array([v.to_bytes() if v is not None else None for v in data], type=pa.binary())
            )
            columns_metadata[f.name] = _column_metadata(data, registry)
        else:
            values = [bytes(v) if isinstance(v, memoryview) else v for v in data]
            arrays.append(pa.array(values, type=_ARROW_TYPES[f.dtype]))

    geo = {
        "version": GEOPARQUET_VERSION,
        "primary_column": primary_column,
        "columns": columns_metadata,
    }
    schema = pa.schema(
        [pa.field(f.name, a.type) for f, a in zip(table.schema.fields, arrays)],
        metadata={GEO_METADATA_KEY: json.dumps(geo).encode("utf-8")},
    )
    pq.write_table(pa.Table.from_arrays(arrays, schema=schema), str(path), compression=compression)
    logger.info(f"Wrote {table.num_rows} rows to {path}")


def read_geo_metadata(path: PathLike) -> Optional[Dict[str, Any]]:
    """Return the decoded ``geo`` metadata of a Parquet file, or None if absent."""
    try:
        metadata = pq.read_schema(str(path)).metadata or {}
    except (OSError, pa.ArrowInvalid) as e:
        raise GeoParquetError(f"Cannot read Parquet schema: {e}", path=str(path))
    return _decode_geo(metadata, str(path))


def _decode_geo(metadata: Dict[bytes, bytes], path: str) -> Optional[Dict[str, Any]]:
    raw = metadata.get(GEO_METADATA_KEY)
    if raw is None:
        return None
    try:
        geo = json.loads(raw)
    except ValueError as e:
        raise GeoParquetError(f"'geo' metadata is not valid JSON: {e}", path=path)
    if not isinstance(geo, dict) or not isinstance(geo.get("columns"), dict):
        raise GeoParquetError("'geo' metadata must be an object with a 'columns' object", path=path)
    return geo


def crs_from_projjson(projjson: Dict[str, Any]) -> CrsId:
    """
    Identifier of a PROJJSON CRS.

    Uses the top-level ``id`` member when present, otherwise asks PROJ to
    identify the definition.

    Raises:
        UnknownCrs: If no authority identifier can be determined
    """
    ident = projjson.get("id")
    if isinstance(ident, dict) and "authority" in ident and "code" in ident:
        return CrsId(str(ident["authority"]), str(ident["code"]))
    try:
        authority = CRS.from_json_dict(projjson).to_authority(min_confidence=100)
    except CRSError as e:
        raise UnknownCrs(projjson.get("name", "PROJJSON"), str(e))
    if authority is None:
        raise UnknownCrs(projjson.get("name", "PROJJSON"), "no authority identifier")
    return CrsId(*authority)


def _column_crs(
    name: str,
    column_meta: Dict[str, Any],
    registry: CrsRegistry,
    path: str,
) -> Optional[CrsId]:
    if "crs" not in column_meta:
        return registry.resolve(DEFAULT_CRS).crs_id
    projjson = column_meta["crs"]
    if projjson is None:
        return None
    if not isinstance(projjson, dict):
        raise GeoParquetError(f"Column '{name}' crs must be null or PROJJSON", path=path, column=name)
    return registry.resolve(crs_from_projjson(projjson)).crs_id


def _binary_views(array: pa.ChunkedArray) -> List[Optional[memoryview]]:
    """Zero-copy slices of every value of a binary column into its Arrow data buffers."""
    values: List[Optional[memoryview]] = []
    for chunk in array.chunks:
        offset_type = np.int64 if pa.types.is_large_binary(chunk.type) else np.int32
        _, offsets_buf, data_buf = chunk.buffers()
        offsets = np.frombuffer(offsets_buf, dtype=offset_type)[
            chunk.offset : chunk.offset + len(chunk) + 1
        ]
        data = memoryview(data_buf) if data_buf is not None else memoryview(b"")
        valid = chunk.is_valid().to_numpy(zero_copy_only=False)
        for i in range(len(chunk)):
            values.append(data[offsets[i] : offsets[i + 1]] if valid[i] else None)
    return values


def _geometry_column(
    array: pa.ChunkedArray,
    crs: Optional[CrsId],
    zero_copy: bool,
) -> GeometryColumn:
    if zero_copy:
        payloads: Iterable[Any] = _binary_views(array)
        encoding = GeometryEncoding.VIEW
    else:
        payloads = array.to_pylist()
        encoding = GeometryEncoding.OWNED
    values = [GeometryValue(p, crs) if p is not None else None for p in payloads]
    return GeometryColumn(values, crs, encoding)


@log_performance(log_level=logging.DEBUG)
def read_geoparquet(
    path: PathLike,
    columns: Optional[Sequence[str]] = None,
    registry: Optional[CrsRegistry] = None,
    zero_copy: bool = False,
    geometry_columns: Optional[Sequence[str]] = None,
) -> Table:
    """
    Read a GeoParquet file into a table.

    Args:
        path: Source file
        columns: Subset of columns to read, all by default
        registry: Registry used to canonicalize column CRS
        zero_copy: Return VIEW geometry values backed by the Arrow buffers
            instead of copying each payload
        geometry_columns: Binary columns to read as untagged geometry when
            the file has no ``geo`` metadata

    Raises:
        GeoParquetError: If the file cannot be read or its metadata is invalid
        UnknownCrs: If a column CRS is not registered
    """
    registry = registry or default_registry()
    try:
        arrow_table = pq.read_table(str(path), columns=list(columns) if columns else None)
    except (OSError, pa.ArrowInvalid) as e:
        raise GeoParquetError(f"Cannot read Parquet file: {e}", path=str(path))

    geo = _decode_geo(arrow_table.schema.metadata or {}, str(path))
    if geo is None:
        logger.debug(f"{path} has no 'geo' metadata")
        geo_columns: Dict[str, Dict[str, Any]] = {
            name: {"crs": None} for name in (geometry_columns or [])
        }
    else:
        geo_columns = geo["columns"]

    data: Dict[str, Any] = {}
    for name in arrow_table.column_names:
        array = arrow_table.column(name)
        column_meta = geo_columns.get(name)
        if column_meta is None:
            data[name] = array.to_pylist()
            continue
        if not (pa.types.is_binary(array.type) or pa.types.is_large_binary(array.type)):
            raise GeoParquetError(
                f"Geometry column '{name}' has type {array.type}, expected binary WKB",
                path=str(path),
                column=name,
            )
        encoding = column_meta.get("encoding", "WKB")
        if str(encoding).upper() != "WKB":
            raise GeoParquetError(
                f"Unsupported geometry encoding {encoding!r} for column '{name}'",
                path=str(path),
                column=name,
            )
        crs = _column_crs(name, column_meta, registry, str(path))
        data[name] = _geometry_column(array, crs, zero_copy)

    table = Table(data)
    logger.info(f"Read {table.num_rows} rows from {path}")
    return table
